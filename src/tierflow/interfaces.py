"""Interfaces of the external systems a pipeline drives.

The stage executor, authorization gate and controller depend only on these
abstract classes. Concrete command, registry and webhook implementations
live in ``tierflow.adapters``; tests supply in-memory fakes.

Implementations signal failure either by returning a result with
``success=False`` or by raising ``ProvisioningError``. Raising
``TransientProvisioningError`` (or ``ConnectionError``/``TimeoutError``)
marks the failure as safe to retry once.

Example:
    >>> from tierflow.interfaces import ProvisioningEngine, ApplyResult, PlanResult
    >>> class NullEngine(ProvisioningEngine):
    ...     def apply(self, environment: str, version: str) -> ApplyResult:
    ...         return ApplyResult(success=True, changed=False)
    ...     def plan(self, environment: str, version: str) -> PlanResult:
    ...         return PlanResult(success=True)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tierflow.schemas.pipeline import RunSummary, StageName


@dataclass
class ApplyResult:
    """Result of a provisioning apply.

    Attributes:
        success: Whether the apply succeeded.
        changed: Whether any resource was created, changed or destroyed.
        error: Error message if the apply failed.
    """

    success: bool
    changed: bool = False
    error: str | None = None


@dataclass
class PlanResult:
    """Result of a provisioning plan.

    Attributes:
        success: Whether planning succeeded.
        diff_summary: Human-readable pending changes; empty when converged.
        error: Error message if planning failed.
    """

    success: bool
    diff_summary: str = ""
    error: str | None = None

    @property
    def has_changes(self) -> bool:
        """Whether the plan reports pending changes."""
        return bool(self.diff_summary.strip())


@dataclass
class SyncResult:
    """Result of a content sync.

    Attributes:
        success: Whether the sync succeeded.
        changed: Whether any object was uploaded, replaced or deleted.
        error: Error message if the sync failed.
    """

    success: bool
    changed: bool = False
    error: str | None = None


@dataclass
class AuthorizationQueryResult:
    """Answer of an authorization source for an actor and environment.

    Attributes:
        allowed: Whether the source knows the actor and permits the environment.
        role: Role of the actor (``owner`` grants owner-policy access).
    """

    allowed: bool
    role: str | None = None


@dataclass
class CheckContext:
    """What a validation check is validating."""

    environment: str
    version: str
    stage: StageName


@dataclass
class CheckResult:
    """Outcome of one validation check.

    Attributes:
        name: Check name.
        passed: Whether the check passed.
        detail: Failure detail or diagnostic output.
    """

    name: str
    passed: bool
    detail: str | None = None


class ProvisioningEngine(ABC):
    """Materializes infrastructure for an environment."""

    @abstractmethod
    def apply(self, environment: str, version: str) -> ApplyResult:
        """Apply the infrastructure definition for ``version`` to ``environment``."""
        ...

    @abstractmethod
    def plan(self, environment: str, version: str) -> PlanResult:
        """Compute pending infrastructure changes without applying them."""
        ...


class ContentStore(ABC):
    """Publishes content to an environment."""

    @abstractmethod
    def sync(self, environment: str, version: str) -> SyncResult:
        """Synchronize content for ``version`` into ``environment``."""
        ...


class AuthorizationSource(ABC):
    """Answers who an actor is and what they may touch."""

    @abstractmethod
    def query(self, actor: str, environment: str) -> AuthorizationQueryResult:
        """Look up ``actor`` for ``environment``."""
        ...


class NotificationSink(ABC):
    """Receives summaries of terminal runs."""

    @abstractmethod
    def publish(self, run_summary: RunSummary) -> None:
        """Publish a run summary. Implementations must not block for long."""
        ...


class ValidationCheck(ABC):
    """A single validation check run inside a validation stage."""

    name: str

    @abstractmethod
    def run(self, context: CheckContext) -> CheckResult:
        """Run the check."""
        ...


__all__ = [
    "ApplyResult",
    "AuthorizationQueryResult",
    "AuthorizationSource",
    "CheckContext",
    "CheckResult",
    "ContentStore",
    "NotificationSink",
    "PlanResult",
    "ProvisioningEngine",
    "SyncResult",
    "ValidationCheck",
]
