"""Exception hierarchy for tierflow.

All pipeline exceptions inherit from PipelineError. Each class carries a
machine-readable ``code`` (recorded as a run's terminal outcome code) and an
``exit_code`` used by the CLI.

Exception Hierarchy:
    PipelineError (base)
    ├── MalformedEventError        # Inbound event cannot be classified
    ├── InvalidEnvironment         # Resolved environment is not configured
    ├── VersionRegressionError     # Candidate version is not newer
    ├── AuthorizationDenied        # Actor not permitted for the environment
    ├── StageTimeout               # Stage or run exceeded its time bound
    ├── StageValidationFailure     # A validation check failed
    ├── ProvisioningError          # Provisioning or content sync failed
    ├── LockContentionError        # Waited too long for the environment lock
    ├── RollbackTargetNotFound     # No release qualifies as rollback target
    ├── EnvironmentFrozenError     # Environment is frozen for deploys
    └── RunCancelledError          # Run cancelled at a safe checkpoint

Exit Codes:
    1  - General error (PipelineError)
    10 - Malformed event
    11 - Invalid environment
    12 - Version regression
    13 - Authorization denied
    14 - Stage timeout
    15 - Validation failure
    16 - Provisioning error
    17 - Lock contention
    18 - Rollback target not found
    19 - Environment frozen
    20 - Cancelled

Example:
    >>> from tierflow.errors import InvalidEnvironment
    >>> raise InvalidEnvironment("qa", ["dev", "staging", "prod"])
    Traceback (most recent call last):
        ...
    InvalidEnvironment: Unknown environment 'qa'. Configured: dev, staging, prod
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all tierflow errors.

    Attributes:
        code: Machine-readable outcome code.
        exit_code: CLI exit code for this error type (default: 1).
    """

    code: str = "PIPELINE_ERROR"
    exit_code: int = 1


class MalformedEventError(PipelineError):
    """Raised when an inbound event cannot be parsed or classified.

    Attributes:
        reason: Why the event was rejected.
    """

    code = "MALFORMED_EVENT"
    exit_code = 10

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed event: {reason}")


class InvalidEnvironment(PipelineError):
    """Raised when a resolved environment name is not configured.

    Attributes:
        environment: The unknown environment name.
        available: Configured environment names.
    """

    code = "INVALID_ENVIRONMENT"
    exit_code = 11

    def __init__(self, environment: str | None, available: list[str] | None = None) -> None:
        self.environment = environment
        self.available = available or []
        if environment is None:
            msg = "No environment could be resolved and none was given"
        else:
            msg = f"Unknown environment '{environment}'"
        if self.available:
            msg += f". Configured: {', '.join(self.available)}"
        super().__init__(msg)


class VersionRegressionError(PipelineError):
    """Raised when a candidate version does not exceed the latest version.

    Attributes:
        candidate: The proposed version.
        latest: The latest known version in the lineage.
    """

    code = "VERSION_REGRESSION"
    exit_code = 12

    def __init__(self, candidate: str, latest: str) -> None:
        self.candidate = candidate
        self.latest = latest
        super().__init__(
            f"Version {candidate} is not greater than latest version {latest}"
        )


class AuthorizationDenied(PipelineError):
    """Raised when an actor is not permitted to act on an environment.

    Attributes:
        actor: The acting identity.
        environment: Target environment.
        reason: Policy reason for the denial.
    """

    code = "AUTHORIZATION_DENIED"
    exit_code = 13

    def __init__(self, actor: str, environment: str, reason: str) -> None:
        self.actor = actor
        self.environment = environment
        self.reason = reason
        super().__init__(
            f"Authorization denied for '{actor}' on '{environment}': {reason}"
        )


class StageTimeout(PipelineError):
    """Raised when a stage or a whole run exceeds its time bound.

    Attributes:
        stage: Stage name (or "run" for the overall deadline).
        timeout_seconds: The bound that was exceeded.
    """

    code = "STAGE_TIMEOUT"
    exit_code = 14

    def __init__(self, stage: str, timeout_seconds: float) -> None:
        self.stage = stage
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Stage '{stage}' timed out after {timeout_seconds:g}s")


class StageValidationFailure(PipelineError):
    """Raised when one or more validation checks fail.

    Attributes:
        stage: Stage whose checks failed.
        failures: Names of the failed checks.
        details: Optional failure detail text.
    """

    code = "VALIDATION_FAILED"
    exit_code = 15

    def __init__(self, stage: str, failures: list[str], details: str | None = None) -> None:
        self.stage = stage
        self.failures = failures
        self.details = details
        msg = f"Validation failed in '{stage}': {', '.join(failures) or 'unknown check'}"
        if details:
            msg += f" ({details})"
        super().__init__(msg)


class ProvisioningError(PipelineError):
    """Raised when the provisioning engine or content store fails.

    Attributes:
        operation: The external operation (apply, plan, sync).
        reason: Failure description.
        transient: Whether a single retry is permitted.
    """

    code = "PROVISIONING_FAILED"
    exit_code = 16

    def __init__(self, operation: str, reason: str, *, transient: bool = False) -> None:
        self.operation = operation
        self.reason = reason
        self.transient = transient
        super().__init__(f"{operation} failed: {reason}")


class TransientProvisioningError(ProvisioningError):
    """Provisioning failure that is safe to retry once."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(operation, reason, transient=True)


class LockContentionError(PipelineError):
    """Raised when the environment lock is not granted within the queue timeout.

    Attributes:
        environment: Environment whose lock was contended.
        waited_seconds: How long the run waited.
        holder: Run currently holding the lock, if known.
    """

    code = "LOCK_CONTENTION"
    exit_code = 17

    def __init__(self, environment: str, waited_seconds: float, holder: str | None = None) -> None:
        self.environment = environment
        self.waited_seconds = waited_seconds
        self.holder = holder
        msg = f"Timed out after {waited_seconds:g}s waiting for lock on '{environment}'"
        if holder:
            msg += f" (held by run {holder})"
        super().__init__(msg)


QueueTimeout = LockContentionError


class RollbackTargetNotFound(PipelineError):
    """Raised when no release qualifies as a rollback target.

    Attributes:
        environment: Environment being rolled back.
        reason: Why no target was found.
    """

    code = "ROLLBACK_TARGET_NOT_FOUND"
    exit_code = 18

    def __init__(self, environment: str, reason: str) -> None:
        self.environment = environment
        self.reason = reason
        super().__init__(f"No rollback target for '{environment}': {reason}")


class EnvironmentFrozenError(PipelineError):
    """Raised when a normal deploy targets a frozen environment.

    Attributes:
        environment: The frozen environment.
        frozen_by: Who froze it.
        reason: Freeze reason.
    """

    code = "ENVIRONMENT_FROZEN"
    exit_code = 19

    def __init__(self, environment: str, frozen_by: str, reason: str) -> None:
        self.environment = environment
        self.frozen_by = frozen_by
        self.reason = reason
        super().__init__(f"Environment '{environment}' is frozen by {frozen_by}: {reason}")


class RunCancelledError(PipelineError):
    """Raised at a safe checkpoint once cancellation has been requested."""

    code = "CANCELLED"
    exit_code = 20

    def __init__(self, run_id: str, checkpoint: str) -> None:
        self.run_id = run_id
        self.checkpoint = checkpoint
        super().__init__(f"Run {run_id} cancelled before '{checkpoint}'")


__all__ = [
    "AuthorizationDenied",
    "EnvironmentFrozenError",
    "InvalidEnvironment",
    "LockContentionError",
    "MalformedEventError",
    "PipelineError",
    "ProvisioningError",
    "QueueTimeout",
    "RollbackTargetNotFound",
    "RunCancelledError",
    "StageTimeout",
    "StageValidationFailure",
    "TransientProvisioningError",
    "VersionRegressionError",
]
