"""State store for pipeline history and current status.

Two implementations share one contract:

- ``InMemoryStateStore`` keeps everything in process memory.
- ``FileStateStore`` additionally persists append-only JSON-lines history
  (runs, releases, release outcomes, rollbacks, authorization decisions,
  lock windows) and atomically rewritten snapshots (current status, freezes)
  under a state directory.

History entries are never rewritten. The current-status snapshot is the only
record that is replaced, and only by the status reporter.

Example:
    >>> store = FileStateStore("/var/lib/tierflow")
    >>> store.get_status("prod")
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field

from tierflow.schemas.pipeline import (
    AuthorizationDecision,
    EnvironmentFreeze,
    EnvironmentStatus,
    LockWindow,
    PipelineRun,
    Release,
    RollbackRecord,
    RunOutcome,
    utc_now,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class ReleaseOutcome(BaseModel):
    """Outcome of a run that deployed a release to an environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str
    version: str
    outcome: RunOutcome
    run_id: str
    recorded_at: datetime = Field(default_factory=utc_now)


class InMemoryStateStore:
    """Thread-safe in-memory state store.

    Every public method takes the store lock, so readers never observe a
    partially applied update.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, PipelineRun] = {}
        self._run_order: list[str] = []
        self._releases: list[Release] = []
        self._release_outcomes: dict[tuple[str, str], ReleaseOutcome] = {}
        self._rollbacks: list[RollbackRecord] = []
        self._authorizations: list[AuthorizationDecision] = []
        self._statuses: dict[str, EnvironmentStatus] = {}
        self._freezes: dict[str, EnvironmentFreeze] = {}
        self._lock_windows: list[LockWindow] = []

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def save_run(self, run: PipelineRun) -> None:
        """Insert or replace a run. Terminal runs are also written to history."""
        with self._lock:
            if run.id not in self._runs:
                self._run_order.append(run.id)
            self._runs[run.id] = run.model_copy(deep=True)
            if run.is_terminal:
                self._persist_run(run)

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run is not None else None

    def list_runs(
        self,
        environment: str | None = None,
        *,
        terminal_only: bool = False,
        limit: int | None = None,
    ) -> list[PipelineRun]:
        """List runs most recent first."""
        with self._lock:
            runs = [self._runs[run_id] for run_id in reversed(self._run_order)]
        if environment is not None:
            runs = [r for r in runs if r.resolved_environment == environment]
        if terminal_only:
            runs = [r for r in runs if r.is_terminal]
        if limit is not None:
            runs = runs[:limit]
        return [r.model_copy(deep=True) for r in runs]

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    def add_release(self, release: Release) -> None:
        """Record a new release.

        Raises:
            ValueError: If the version already exists in the environment lineage.
        """
        with self._lock:
            for existing in self._releases:
                if (
                    existing.environment == release.environment
                    and existing.version == release.version
                ):
                    raise ValueError(
                        f"Release {release.version} already exists for {release.environment}"
                    )
            self._releases.append(release)
            self._persist("releases", release)

    def list_releases(self, environment: str) -> list[Release]:
        """Releases of an environment lineage in creation order."""
        with self._lock:
            return [r for r in self._releases if r.environment == environment]

    def get_release(self, environment: str, version: str) -> Release | None:
        with self._lock:
            for release in self._releases:
                if release.environment == environment and release.version == version:
                    return release
        return None

    def record_release_outcome(
        self,
        environment: str,
        version: str,
        outcome: RunOutcome,
        run_id: str,
    ) -> None:
        """Record the latest outcome of deploying a release."""
        entry = ReleaseOutcome(
            environment=environment, version=version, outcome=outcome, run_id=run_id
        )
        with self._lock:
            self._release_outcomes[(environment, version)] = entry
            self._persist("release_outcomes", entry)

    def release_outcome(self, environment: str, version: str) -> RunOutcome | None:
        """Last recorded outcome of a release, or None if never deployed."""
        with self._lock:
            entry = self._release_outcomes.get((environment, version))
        return entry.outcome if entry is not None else None

    # ------------------------------------------------------------------
    # Audit records
    # ------------------------------------------------------------------

    def add_rollback(self, record: RollbackRecord) -> None:
        with self._lock:
            self._rollbacks.append(record)
            self._persist("rollbacks", record)

    def list_rollbacks(self, environment: str | None = None) -> list[RollbackRecord]:
        with self._lock:
            records = list(self._rollbacks)
        if environment is not None:
            records = [r for r in records if r.environment == environment]
        return records

    def record_authorization(self, decision: AuthorizationDecision) -> None:
        with self._lock:
            self._authorizations.append(decision)
            self._persist("authorizations", decision)

    def list_authorizations(self, environment: str | None = None) -> list[AuthorizationDecision]:
        with self._lock:
            decisions = list(self._authorizations)
        if environment is not None:
            decisions = [d for d in decisions if d.environment == environment]
        return decisions

    def record_lock_window(self, window: LockWindow) -> None:
        with self._lock:
            self._lock_windows.append(window)
            self._persist("lock_windows", window)

    def lock_windows(self, environment: str | None = None) -> list[LockWindow]:
        with self._lock:
            windows = list(self._lock_windows)
        if environment is not None:
            windows = [w for w in windows if w.environment == environment]
        return windows

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def set_status(self, status: EnvironmentStatus) -> None:
        """Replace an environment's current status record."""
        with self._lock:
            self._statuses[status.environment] = status
            self._write_statuses()

    def get_status(self, environment: str) -> EnvironmentStatus | None:
        with self._lock:
            return self._statuses.get(environment)

    def all_statuses(self) -> dict[str, EnvironmentStatus]:
        with self._lock:
            return dict(self._statuses)

    def set_freeze(self, freeze: EnvironmentFreeze) -> None:
        with self._lock:
            self._freezes[freeze.environment] = freeze
            self._write_freezes()

    def clear_freeze(self, environment: str) -> EnvironmentFreeze | None:
        """Remove a freeze, returning it if one existed."""
        with self._lock:
            freeze = self._freezes.pop(environment, None)
            if freeze is not None:
                self._write_freezes()
            return freeze

    def get_freeze(self, environment: str) -> EnvironmentFreeze | None:
        with self._lock:
            return self._freezes.get(environment)

    def all_freezes(self) -> dict[str, EnvironmentFreeze]:
        with self._lock:
            return dict(self._freezes)

    # ------------------------------------------------------------------
    # Persistence hooks (no-ops in memory)
    # ------------------------------------------------------------------

    def _persist_run(self, run: PipelineRun) -> None:
        pass

    def _persist(self, kind: str, record: BaseModel) -> None:
        pass

    def _write_statuses(self) -> None:
        pass

    def _write_freezes(self) -> None:
        pass


StateStore = InMemoryStateStore
"""Store contract used by pipeline components."""


class FileStateStore(InMemoryStateStore):
    """State store persisted under a directory.

    Layout::

        <state_dir>/
            runs.jsonl              # terminal runs (append-only)
            releases.jsonl
            release_outcomes.jsonl
            rollbacks.jsonl
            authorizations.jsonl
            lock_windows.jsonl
            status.json             # current status per environment
            freezes.json

    Args:
        state_dir: Directory holding the state files. Created if missing.
    """

    def __init__(self, state_dir: str | Path) -> None:
        super().__init__()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._log = logger.bind(state_dir=str(self.state_dir))
        self._load()

    def _path(self, name: str) -> Path:
        return self.state_dir / name

    def _read_jsonl(self, kind: str, model: type[M]) -> list[M]:
        path = self._path(f"{kind}.jsonl")
        if not path.exists():
            return []
        records: list[M] = []
        with path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(model.model_validate_json(line))
        return records

    def _load(self) -> None:
        for run in self._read_jsonl("runs", PipelineRun):
            if run.id not in self._runs:
                self._run_order.append(run.id)
            self._runs[run.id] = run
        self._releases = self._read_jsonl("releases", Release)
        for entry in self._read_jsonl("release_outcomes", ReleaseOutcome):
            self._release_outcomes[(entry.environment, entry.version)] = entry
        self._rollbacks = self._read_jsonl("rollbacks", RollbackRecord)
        self._authorizations = self._read_jsonl("authorizations", AuthorizationDecision)
        self._lock_windows = self._read_jsonl("lock_windows", LockWindow)

        status_path = self._path("status.json")
        if status_path.exists():
            data = json.loads(status_path.read_text(encoding="utf-8"))
            self._statuses = {
                env: EnvironmentStatus.model_validate(value) for env, value in data.items()
            }
        freeze_path = self._path("freezes.json")
        if freeze_path.exists():
            data = json.loads(freeze_path.read_text(encoding="utf-8"))
            self._freezes = {
                env: EnvironmentFreeze.model_validate(value) for env, value in data.items()
            }
        self._log.debug(
            "state_loaded",
            runs=len(self._runs),
            releases=len(self._releases),
            statuses=len(self._statuses),
        )

    def _append(self, kind: str, record: BaseModel) -> None:
        path = self._path(f"{kind}.jsonl")
        with path.open("a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")

    def _persist_run(self, run: PipelineRun) -> None:
        self._append("runs", run)

    def _persist(self, kind: str, record: BaseModel) -> None:
        self._append(kind, record)

    def _write_snapshot(self, name: str, records: dict[str, BaseModel]) -> None:
        data = {key: value.model_dump(mode="json") for key, value in records.items()}
        fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path(name))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _write_statuses(self) -> None:
        self._write_snapshot("status.json", dict(self._statuses))

    def _write_freezes(self) -> None:
        self._write_snapshot("freezes.json", dict(self._freezes))


__all__ = [
    "FileStateStore",
    "InMemoryStateStore",
    "ReleaseOutcome",
    "StateStore",
]
