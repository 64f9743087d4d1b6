"""Unit tests for per-environment status reporting.

Tests cover:
- Updates from terminal runs only
- Dry runs and cancelled runs never change status
- Out-of-order completions never replace a newer record
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tierflow.pipeline.status import StatusReporter
from tierflow.pipeline.store import InMemoryStateStore
from tierflow.schemas.pipeline import DeploymentRequest, PipelineRun, RunOutcome, TriggerType

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _run(
    outcome: RunOutcome | None,
    *,
    completed_at: datetime | None = NOW,
    dry_run: bool = False,
    version: str | None = "1.0.0",
) -> PipelineRun:
    request = DeploymentRequest(
        trigger_type=TriggerType.MAIN_PUSH, actor="alice", dry_run=dry_run
    )
    return PipelineRun(
        request=request,
        resolved_environment="staging",
        version=version,
        outcome=outcome,
        outcome_code=outcome.value.upper() if outcome else None,
        completed_at=completed_at if outcome else None,
    )


@pytest.fixture
def reporter(store: InMemoryStateStore) -> StatusReporter:
    return StatusReporter(store)


class TestStatusReporter:
    """Tests for status record updates."""

    def test_terminal_run_updates_status(self, reporter: StatusReporter) -> None:
        """A terminal run becomes the environment's current record."""
        run = _run(RunOutcome.DEPLOYED)

        status = reporter.report(run)

        assert status is not None
        assert status.triggering_run_id == run.id
        assert status.timestamp == NOW
        assert reporter.current("staging") == status
        assert reporter.all() == {"staging": status}

    @pytest.mark.parametrize(
        "outcome",
        [RunOutcome.FAILED, RunOutcome.REJECTED, RunOutcome.NO_CHANGES_DETECTED],
    )
    def test_every_reportable_outcome(self, reporter: StatusReporter, outcome: RunOutcome) -> None:
        """Failures and rejections are reported like deployments."""
        status = reporter.report(_run(outcome))

        assert status is not None
        assert status.outcome == outcome

    def test_in_flight_run_ignored(self, reporter: StatusReporter) -> None:
        """A run without an outcome never touches status."""
        assert reporter.report(_run(None)) is None
        assert reporter.current("staging") is None

    def test_dry_run_ignored(self, reporter: StatusReporter) -> None:
        """Dry runs are not reported."""
        assert reporter.report(_run(RunOutcome.DEPLOYED, dry_run=True)) is None
        assert reporter.all() == {}

    def test_cancelled_run_ignored(self, reporter: StatusReporter) -> None:
        """Cancelled runs leave the previous record in place."""
        previous = reporter.report(_run(RunOutcome.DEPLOYED))

        assert reporter.report(_run(RunOutcome.CANCELLED, version="1.1.0")) is None
        assert reporter.current("staging") == previous

    def test_newer_completion_replaces(self, reporter: StatusReporter) -> None:
        """A later completion replaces the record."""
        reporter.report(_run(RunOutcome.DEPLOYED))
        newer = _run(RunOutcome.FAILED, completed_at=NOW + timedelta(minutes=5), version="1.1.0")

        reporter.report(newer)

        current = reporter.current("staging")
        assert current is not None
        assert current.triggering_run_id == newer.id
        assert current.outcome == RunOutcome.FAILED

    def test_out_of_order_completion_ignored(self, reporter: StatusReporter) -> None:
        """A run that completed before the current record never replaces it."""
        newer = _run(RunOutcome.DEPLOYED, completed_at=NOW + timedelta(minutes=5))
        older = _run(RunOutcome.FAILED, completed_at=NOW)
        reporter.report(newer)

        assert reporter.report(older) is None

        current = reporter.current("staging")
        assert current is not None
        assert current.triggering_run_id == newer.id
