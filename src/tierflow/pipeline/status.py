"""Per-environment status reporting.

Each environment has one current status record: the outcome of the most
recently completed run that reached a reportable terminal outcome. The
record is replaced atomically and only from terminal runs, so an in-flight
run never changes what dashboards see. Dry runs and cancelled runs are not
reported.
"""

from __future__ import annotations

import threading

import structlog

from tierflow.pipeline.store import InMemoryStateStore
from tierflow.schemas.pipeline import (
    STATUS_OUTCOMES,
    EnvironmentStatus,
    PipelineRun,
)

logger = structlog.get_logger(__name__)


class StatusReporter:
    """Maintains the current status record of every environment."""

    def __init__(self, store: InMemoryStateStore) -> None:
        self.store = store
        self._lock = threading.Lock()

    def report(self, run: PipelineRun) -> EnvironmentStatus | None:
        """Update the environment's record from a terminal run.

        A run that completed earlier than the current record's run does not
        replace it.

        Args:
            run: The run to report.

        Returns:
            The new record, or None if the run does not affect status.
        """
        log = logger.bind(run_id=run.id, environment=run.resolved_environment)
        if not run.is_terminal or run.outcome is None:
            log.debug("status_skipped_in_flight")
            return None
        if run.request.dry_run or run.outcome not in STATUS_OUTCOMES:
            log.debug("status_skipped", outcome=run.outcome.value, dry_run=run.request.dry_run)
            return None

        timestamp = run.completed_at or run.started_at
        status = EnvironmentStatus(
            environment=run.resolved_environment,
            outcome=run.outcome,
            timestamp=timestamp,
            triggering_run_id=run.id,
            version=run.version,
            outcome_code=run.outcome_code,
        )
        with self._lock:
            current = self.store.get_status(run.resolved_environment)
            if current is not None and current.timestamp > timestamp:
                log.info("status_superseded", current_run_id=current.triggering_run_id)
                return None
            self.store.set_status(status)
        log.info("status_updated", outcome=status.outcome.value, version=status.version)
        return status

    def current(self, environment: str) -> EnvironmentStatus | None:
        """Current record of an environment."""
        return self.store.get_status(environment)

    def all(self) -> dict[str, EnvironmentStatus]:
        """Current records of every reported environment."""
        return self.store.all_statuses()


__all__ = ["StatusReporter"]
