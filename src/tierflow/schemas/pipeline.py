"""Pipeline domain schemas.

This module defines Pydantic v2 models for inbound events, deployment
requests, releases, pipeline runs and the audit records produced while a
run moves through the stage graph.

Key Components:
    TriggerEvent: Raw inbound event (push, pull request, tag, manual)
    TriggerDescriptor: Classified trigger
    DeploymentRequest: Immutable request created on event arrival
    Release: Immutable release identified by a semantic version
    StageState: Per-run status of one stage
    PipelineRun: One traversal of the stage graph
    AuthorizationDecision: Cached allow/deny decision for a run
    RollbackRecord: Immutable rollback audit entry
    EnvironmentStatus: Per-environment current status record
    LockWindow: Interval during which a run held an environment lock
    RunSummary: Flat run description published to notification sinks
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Enums
# =============================================================================


class EventKind(str, Enum):
    """Kind of inbound version-control or manual event."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    TAG = "tag"
    MANUAL = "manual"


class TriggerType(str, Enum):
    """Classified trigger type.

    Examples:
        >>> TriggerType("main_push").value
        'main_push'
    """

    FEATURE_PUSH = "feature_push"
    PULL_REQUEST = "pull_request"
    MAIN_PUSH = "main_push"
    RELEASE_TAG = "release_tag"
    MANUAL_DISPATCH = "manual_dispatch"
    EMERGENCY = "emergency"


class Tier(str, Enum):
    """Environment risk tier."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class ApprovalPolicy(str, Enum):
    """Authorization policy applied to an environment.

    Attributes:
        NONE: No check (dev tier default).
        AUTHENTICATED: Any authenticated actor (staging tier default).
        OWNERS: Membership in the owners set (prod tier default).
    """

    NONE = "none"
    AUTHENTICATED = "authenticated"
    OWNERS = "owners"


class Operation(str, Enum):
    """Operation requested of the pipeline."""

    DEPLOY = "deploy"
    RELEASE = "release"
    ROLLBACK = "rollback"
    HOTFIX = "hotfix"


class StageName(str, Enum):
    """Stages of the pipeline graph, in execution order."""

    BUILD_VALIDATE = "build-validate"
    TEST_VALIDATE = "test-validate"
    INFRA_APPLY = "infra-apply"
    POST_INFRA_VALIDATE = "post-infra-validate"
    CONTENT_DEPLOY = "content-deploy"
    POST_DEPLOY_VALIDATE = "post-deploy-validate"


class StageStatus(str, Enum):
    """Execution status of a stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Why a stage ended in the skipped status.

    Attributes:
        NO_CHANGES: Stage ran and the external system reported no change.
        UPSTREAM_FAILURE: An earlier stage failed.
        NOT_SELECTED: Stage is outside the run's stage selection.
        CANCELLED: Run was cancelled before the stage started.
        ABORTED: Run was rejected before any stage started.
        DRY_RUN: Mutating stage replaced by a plan in dry-run mode.
    """

    NO_CHANGES = "no_changes"
    UPSTREAM_FAILURE = "upstream_failure"
    NOT_SELECTED = "not_selected"
    CANCELLED = "cancelled"
    ABORTED = "aborted"
    DRY_RUN = "dry_run"


class RunOutcome(str, Enum):
    """Terminal outcome of a pipeline run."""

    DEPLOYED = "deployed"
    FAILED = "failed"
    NO_CHANGES_DETECTED = "no_changes_detected"
    CONDITIONS_NOT_MET = "conditions_not_met"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ReleaseType(str, Enum):
    """Release classification."""

    STANDARD = "standard"
    RC = "rc"
    HOTFIX = "hotfix"
    ROLLBACK = "rollback"


class VersionBump(str, Enum):
    """Requested version increment."""

    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    RC = "rc"


class RollbackStrategy(str, Enum):
    """Rollback strategies.

    Attributes:
        LAST_KNOWN_GOOD: Newest deployed release earlier than the current one.
        SPECIFIC_REVISION: Caller-supplied version or source revision.
        INFRASTRUCTURE_ONLY: Re-apply infrastructure only.
        CONTENT_ONLY: Re-sync content only.
    """

    LAST_KNOWN_GOOD = "last_known_good"
    SPECIFIC_REVISION = "specific_revision"
    INFRASTRUCTURE_ONLY = "infrastructure_only"
    CONTENT_ONLY = "content_only"


# =============================================================================
# Stage graph
# =============================================================================

STAGE_ORDER: tuple[StageName, ...] = tuple(StageName)
"""Stages in execution order."""

STAGE_DEPENDENCIES: dict[StageName, tuple[StageName, ...]] = {
    StageName.BUILD_VALIDATE: (),
    StageName.TEST_VALIDATE: (StageName.BUILD_VALIDATE,),
    StageName.INFRA_APPLY: (StageName.TEST_VALIDATE,),
    StageName.POST_INFRA_VALIDATE: (StageName.INFRA_APPLY,),
    StageName.CONTENT_DEPLOY: (StageName.POST_INFRA_VALIDATE,),
    StageName.POST_DEPLOY_VALIDATE: (StageName.CONTENT_DEPLOY,),
}

MUTATING_STAGES: frozenset[StageName] = frozenset(
    {StageName.INFRA_APPLY, StageName.CONTENT_DEPLOY}
)
"""Stages that change external state."""

TERMINAL_STAGE_STATUSES: frozenset[StageStatus] = frozenset(
    {StageStatus.SUCCESS, StageStatus.FAILED, StageStatus.SKIPPED}
)

STATUS_OUTCOMES: frozenset[RunOutcome] = frozenset(
    {
        RunOutcome.DEPLOYED,
        RunOutcome.FAILED,
        RunOutcome.NO_CHANGES_DETECTED,
        RunOutcome.CONDITIONS_NOT_MET,
        RunOutcome.REJECTED,
    }
)
"""Outcomes that replace an environment's current status record."""


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a new opaque identifier."""
    return uuid4().hex


# =============================================================================
# Events and requests
# =============================================================================


class TriggerEvent(BaseModel):
    """Raw inbound event.

    Attributes:
        kind: Event kind.
        ref: Git ref (``refs/heads/main``, ``refs/tags/v1.2.0``) or bare name.
        actor: Identity that caused the event.
        payload: Provider payload (base branch, commits, operation, ...).
        manual_flags: Caller flags; ``emergency`` marks an emergency run.
        explicit_environment: Environment requested by the caller.
        explicit_version_request: Requested bump or explicit version.
        reason: Free-text justification.

    Examples:
        >>> event = TriggerEvent(kind="push", ref="refs/heads/main", actor="alice")
        >>> event.kind
        <EventKind.PUSH: 'push'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: EventKind = Field(..., description="Event kind")
    ref: str = Field(default="", description="Git ref or bare branch/tag name")
    actor: str = Field(..., min_length=1, description="Identity that caused the event")
    payload: dict[str, Any] = Field(default_factory=dict, description="Provider payload")
    manual_flags: dict[str, bool] = Field(
        default_factory=dict,
        description="Caller-set flags such as emergency",
    )
    explicit_environment: str | None = Field(default=None, description="Requested environment")
    explicit_version_request: str | None = Field(
        default=None,
        description="Requested version bump (major/minor/patch/rc) or explicit version",
    )
    reason: str | None = Field(default=None, description="Free-text justification")


class TriggerDescriptor(BaseModel):
    """Classified trigger produced by the trigger classifier."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    trigger_type: TriggerType
    ref: str = Field(default="", description="Normalized ref (prefix stripped)")
    release_type: ReleaseType | None = Field(
        default=None,
        description="Release type encoded in a tag ref",
    )
    tag_version: str | None = Field(default=None, description="Version parsed from a tag ref")
    target_branch: str | None = Field(default=None, description="Pull request base branch")


class DeploymentRequest(BaseModel):
    """Immutable request created on event arrival.

    Attributes:
        trigger_type: Classified trigger.
        source_ref: Ref that produced the request.
        actor: Acting identity.
        operation: Requested operation.
        explicit_environment: Environment requested by the caller.
        explicit_version_request: Requested bump or explicit version.
        reason: Justification (required for hotfix/emergency).
        source_revision: Commit or content revision being deployed.
        commits: Commit subjects used for release notes.
        dry_run: Plan-only run.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: str = Field(default_factory=new_id, description="Request identifier")
    trigger_type: TriggerType
    source_ref: str = Field(default="")
    actor: str = Field(..., min_length=1)
    operation: Operation = Field(default=Operation.DEPLOY)
    explicit_environment: str | None = None
    explicit_version_request: str | None = None
    reason: str | None = None
    source_revision: str | None = None
    commits: tuple[str, ...] = Field(default=())
    dry_run: bool = False
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Releases and runs
# =============================================================================


class Release(BaseModel):
    """Immutable release.

    Attributes:
        version: Semantic version with optional pre-release suffix.
        release_type: Release classification.
        environment: Environment lineage the release belongs to.
        source_revision: Commit or content revision the release points at.
        notes: Generated release notes.
        run_id: Run that created the release.
        created_at: Creation time (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(..., min_length=5)
    release_type: ReleaseType
    environment: str
    source_revision: str | None = None
    notes: str = ""
    run_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class StageState(BaseModel):
    """Status of one stage within a run. Mutated only by the stage executor."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    name: StageName
    status: StageStatus = StageStatus.PENDING
    depends_on: tuple[StageName, ...] = ()
    skip_reason: SkipReason | None = None
    changed: bool = False
    attempts: int = 0
    error: str | None = None
    error_code: str | None = None
    detail: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the stage has finished."""
        return self.status in TERMINAL_STAGE_STATUSES

    def skip(self, reason: SkipReason, detail: str | None = None) -> None:
        """Mark the stage skipped with a reason."""
        self.status = StageStatus.SKIPPED
        self.skip_reason = reason
        if detail is not None:
            self.detail = detail
        self.completed_at = utc_now()


class AuthorizationDecision(BaseModel):
    """Authorization decision, cached for the lifetime of one run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    actor: str
    environment: str
    operation: Operation
    allowed: bool
    policy_reason: str
    policy: ApprovalPolicy
    role: str | None = None
    run_id: str | None = None
    decided_at: datetime = Field(default_factory=utc_now)


class PipelineRun(BaseModel):
    """One traversal of the stage graph for a request.

    Once ``outcome`` is set the run is terminal and no longer mutated.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(default_factory=new_id)
    request: DeploymentRequest
    resolved_environment: str
    stage_states: list[StageState] = Field(default_factory=list)
    version: str | None = None
    release_type: ReleaseType | None = None
    authorization: AuthorizationDecision | None = None
    outcome: RunOutcome | None = None
    outcome_code: str | None = None
    outcome_reason: str | None = None
    plan_summary: str | None = None
    trace_id: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the run has reached a terminal outcome."""
        return self.outcome is not None

    def stage(self, name: StageName) -> StageState:
        """Return the state of the named stage.

        Raises:
            KeyError: If the stage is not part of the run.
        """
        for state in self.stage_states:
            if state.name == name:
                return state
        raise KeyError(name.value)

    @property
    def executed_stages(self) -> list[StageState]:
        """Stages that actually started."""
        return [s for s in self.stage_states if s.attempts > 0]


class RollbackRecord(BaseModel):
    """Immutable rollback audit entry.

    Attributes:
        rollback_id: Unique rollback identifier.
        strategy: Strategy used.
        environment: Environment rolled back.
        target_reference: Caller reference or resolved target version.
        target_version: Version of the target release. None when the rollback
            was rejected before a target was selected.
        target_revision: Source revision of the target release.
        previous_version: Version current before the rollback.
        version_tag: Rollback tag (target version plus rollback suffix), or
            None when no target was selected.
        initiated_by: Acting identity.
        reason: Operator reason.
        run_id: Run executing the rollback.
        outcome: Terminal run outcome.
        outcome_code: Machine-readable outcome code.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rollback_id: str = Field(default_factory=new_id)
    strategy: RollbackStrategy
    environment: str
    target_reference: str
    target_version: str | None = None
    target_revision: str | None = None
    previous_version: str | None = None
    version_tag: str | None = None
    initiated_by: str
    reason: str
    run_id: str
    outcome: RunOutcome
    outcome_code: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class EnvironmentStatus(BaseModel):
    """Current status of an environment, derived from terminal runs only."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str
    outcome: RunOutcome
    timestamp: datetime
    triggering_run_id: str
    version: str | None = None
    outcome_code: str | None = None


class LockWindow(BaseModel):
    """Interval during which a run held an environment's infra lock."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str
    run_id: str
    acquired_at: datetime
    released_at: datetime
    acquired_monotonic: float
    released_monotonic: float
    waited_seconds: float = 0.0

    def overlaps(self, other: LockWindow) -> bool:
        """Whether two windows on the same environment overlap in time."""
        if self.environment != other.environment:
            return False
        return (
            self.acquired_monotonic < other.released_monotonic
            and other.acquired_monotonic < self.released_monotonic
        )


class EnvironmentFreeze(BaseModel):
    """Deploy freeze on an environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str
    frozen_by: str
    reason: str = Field(..., min_length=1)
    frozen_at: datetime = Field(default_factory=utc_now)


class RunSummary(BaseModel):
    """Flat run description published to notification sinks."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: str
    environment: str
    trigger_type: TriggerType
    operation: Operation
    actor: str
    outcome: RunOutcome
    outcome_code: str | None = None
    outcome_reason: str | None = None
    version: str | None = None
    dry_run: bool = False
    stages: dict[str, str] = Field(default_factory=dict)
    started_at: datetime
    completed_at: datetime | None = None
    trace_id: str | None = None

    @classmethod
    def from_run(cls, run: PipelineRun) -> RunSummary:
        """Build a summary from a terminal run.

        Raises:
            ValueError: If the run is not terminal.
        """
        if run.outcome is None:
            raise ValueError(f"Run {run.id} is not terminal")
        stages = {}
        for state in run.stage_states:
            label = state.status.value
            if state.skip_reason is not None:
                label = f"{label}:{state.skip_reason.value}"
            stages[state.name.value] = label
        return cls(
            run_id=run.id,
            environment=run.resolved_environment,
            trigger_type=run.request.trigger_type,
            operation=run.request.operation,
            actor=run.request.actor,
            outcome=run.outcome,
            outcome_code=run.outcome_code,
            outcome_reason=run.outcome_reason,
            version=run.version,
            dry_run=run.request.dry_run,
            stages=stages,
            started_at=run.started_at,
            completed_at=run.completed_at,
            trace_id=run.trace_id,
        )


__all__ = [
    "ApprovalPolicy",
    "AuthorizationDecision",
    "DeploymentRequest",
    "EnvironmentFreeze",
    "EnvironmentStatus",
    "EventKind",
    "LockWindow",
    "MUTATING_STAGES",
    "Operation",
    "PipelineRun",
    "Release",
    "ReleaseType",
    "RollbackRecord",
    "RollbackStrategy",
    "RunOutcome",
    "RunSummary",
    "STAGE_DEPENDENCIES",
    "STAGE_ORDER",
    "STATUS_OUTCOMES",
    "SkipReason",
    "StageName",
    "StageState",
    "StageStatus",
    "Tier",
    "TriggerDescriptor",
    "TriggerEvent",
    "TriggerType",
    "VersionBump",
    "new_id",
    "utc_now",
]
