"""Per-environment infrastructure lock and run cancellation.

The lock serializes infra-mutating work per environment. Waiters are
granted the lock strictly in arrival order (FIFO); a waiter that exceeds its
queue timeout leaves the queue with LockContentionError. Runs on different
environments never contend.

When the store is file-backed, the lock is also held as an exclusive
``fcntl.flock`` on ``<state_dir>/locks/<environment>.lock``, so separate
processes sharing a state directory (concurrent CLI invocations) serialize
too. FIFO order holds within a process; across processes the lock goes to
whichever waiter polls first.

Every completed hold is recorded as a LockWindow carrying both wall-clock
and monotonic timestamps, so tests and audits can verify that windows on one
environment never overlap.

Example:
    >>> locks = EnvironmentLockManager()
    >>> with locks.hold("prod", run_id="r1", timeout=60):
    ...     ...  # infra-apply, post-infra-validate
"""

from __future__ import annotations

import fcntl
import os
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from tierflow.errors import LockContentionError
from tierflow.pipeline.store import FileStateStore, InMemoryStateStore
from tierflow.schemas.pipeline import LockWindow, utc_now

logger = structlog.get_logger(__name__)

FILE_LOCK_POLL_SECONDS = 0.05


@dataclass(eq=False)
class _Ticket:
    run_id: str
    enqueued_monotonic: float
    granted: bool = False
    acquired_at: datetime = field(default_factory=utc_now)
    acquired_monotonic: float = 0.0
    waited_seconds: float = 0.0
    fd: int | None = None


@dataclass
class LockGrant:
    """Handle returned when a lock is granted."""

    environment: str
    run_id: str
    waited_seconds: float
    _ticket: _Ticket = field(repr=False)


class EnvironmentLockManager:
    """FIFO exclusive locks keyed by environment name.

    Args:
        store: Optional store receiving completed lock windows.
        monotonic: Monotonic clock (seconds).
        lock_dir: Directory of per-environment lock files shared with other
            processes. Defaults to ``<state_dir>/locks`` for a FileStateStore
            and to no file locking otherwise.
    """

    def __init__(
        self,
        store: InMemoryStateStore | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        lock_dir: str | Path | None = None,
    ) -> None:
        self.store = store
        self._monotonic = monotonic
        self._cond = threading.Condition()
        self._queues: dict[str, deque[_Ticket]] = {}
        if lock_dir is None and isinstance(store, FileStateStore):
            lock_dir = store.state_dir / "locks"
        self.lock_dir = Path(lock_dir) if lock_dir is not None else None

    def acquire(self, environment: str, run_id: str, timeout: float) -> LockGrant:
        """Wait in line for the environment lock.

        Args:
            environment: Environment name.
            run_id: Run requesting the lock.
            timeout: Maximum seconds to wait in the queue.

        Returns:
            Grant to pass to ``release``.

        Raises:
            LockContentionError: If the lock was not granted within ``timeout``.
        """
        log = logger.bind(environment=environment, run_id=run_id)
        ticket = _Ticket(run_id=run_id, enqueued_monotonic=self._monotonic())
        deadline = ticket.enqueued_monotonic + timeout
        with self._cond:
            queue = self._queues.setdefault(environment, deque())
            queue.append(ticket)
            if queue[0] is not ticket:
                log.info(
                    "lock_queued",
                    position=len(queue) - 1,
                    holder=queue[0].run_id,
                )
            while queue[0] is not ticket:
                remaining = deadline - self._monotonic()
                if remaining <= 0:
                    holder = queue[0].run_id
                    self._leave(environment, ticket)
                    waited = self._monotonic() - ticket.enqueued_monotonic
                    log.warning("lock_timeout", waited_seconds=waited, holder=holder)
                    raise LockContentionError(environment, waited, holder)
                self._cond.wait(remaining)

        if self.lock_dir is not None:
            try:
                ticket.fd = self._lock_file(environment, run_id, ticket, deadline)
            except LockContentionError as e:
                with self._cond:
                    self._leave(environment, ticket)
                log.warning("lock_timeout", waited_seconds=e.waited_seconds, holder=e.holder)
                raise

        with self._cond:
            ticket.granted = True
            ticket.acquired_at = utc_now()
            ticket.acquired_monotonic = self._monotonic()
            ticket.waited_seconds = ticket.acquired_monotonic - ticket.enqueued_monotonic

        log.info("lock_acquired", waited_seconds=round(ticket.waited_seconds, 3))
        return LockGrant(
            environment=environment,
            run_id=run_id,
            waited_seconds=ticket.waited_seconds,
            _ticket=ticket,
        )

    def release(self, grant: LockGrant) -> LockWindow:
        """Release a granted lock and record the hold window.

        Raises:
            RuntimeError: If the grant does not hold the lock.
        """
        ticket = grant._ticket
        with self._cond:
            queue = self._queues.get(grant.environment)
            if not queue or queue[0] is not ticket or not ticket.granted:
                raise RuntimeError(
                    f"Run {grant.run_id} does not hold the lock on '{grant.environment}'"
                )
            released_monotonic = self._monotonic()
            window = LockWindow(
                environment=grant.environment,
                run_id=grant.run_id,
                acquired_at=ticket.acquired_at,
                released_at=utc_now(),
                acquired_monotonic=ticket.acquired_monotonic,
                released_monotonic=released_monotonic,
                waited_seconds=ticket.waited_seconds,
            )
            if ticket.fd is not None:
                fcntl.flock(ticket.fd, fcntl.LOCK_UN)
                os.close(ticket.fd)
                ticket.fd = None
            self._leave(grant.environment, ticket)

        if self.store is not None:
            self.store.record_lock_window(window)
        logger.info(
            "lock_released",
            environment=grant.environment,
            run_id=grant.run_id,
            held_seconds=round(released_monotonic - ticket.acquired_monotonic, 3),
        )
        return window

    def _leave(self, environment: str, ticket: _Ticket) -> None:
        """Remove a ticket from its queue. Caller holds the condition."""
        queue = self._queues[environment]
        queue.remove(ticket)
        if not queue:
            del self._queues[environment]
        self._cond.notify_all()

    def _lock_file(self, environment: str, run_id: str, ticket: _Ticket, deadline: float) -> int:
        """Take the environment's lock file, polling until ``deadline``.

        The holder's run id is written into the file so that waiters in
        other processes can name it.
        """
        assert self.lock_dir is not None
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_dir / f"{environment}.lock"
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    remaining = deadline - self._monotonic()
                    if remaining <= 0:
                        holder = os.pread(fd, 256, 0).decode(errors="replace").strip()
                        waited = self._monotonic() - ticket.enqueued_monotonic
                        raise LockContentionError(environment, waited, holder or None) from None
                    time.sleep(min(FILE_LOCK_POLL_SECONDS, remaining))
            os.ftruncate(fd, 0)
            os.pwrite(fd, run_id.encode(), 0)
        except BaseException:
            os.close(fd)
            raise
        return fd

    @contextmanager
    def hold(self, environment: str, run_id: str, timeout: float) -> Iterator[LockGrant]:
        """Context manager holding the environment lock."""
        grant = self.acquire(environment, run_id, timeout)
        try:
            yield grant
        finally:
            self.release(grant)

    def holder(self, environment: str) -> str | None:
        """Run currently holding the lock, if any."""
        with self._cond:
            queue = self._queues.get(environment)
            if queue and queue[0].granted:
                return queue[0].run_id
            return None

    def waiting(self, environment: str) -> list[str]:
        """Runs waiting for the lock, in grant order."""
        with self._cond:
            queue = self._queues.get(environment, deque())
            return [t.run_id for t in queue if not t.granted]


class CancellationToken:
    """Cooperative cancellation flag checked at safe stage boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


__all__ = [
    "CancellationToken",
    "EnvironmentLockManager",
    "LockGrant",
]
