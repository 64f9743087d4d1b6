"""Schema definitions for tierflow.

Pipeline Models:
    TriggerEvent, DeploymentRequest, Release, PipelineRun, RollbackRecord,
    AuthorizationDecision, EnvironmentStatus, RunSummary

Configuration Models:
    PipelineConfig, EnvironmentConfig, ResourceLimits, CheckConfig,
    WebhookConfig

Example:
    >>> from tierflow.schemas import PipelineConfig
    >>> PipelineConfig().environment_names
    ['dev', 'staging', 'prod']
"""

from __future__ import annotations

from tierflow.schemas.config import (
    CheckConfig,
    CommandContentConfig,
    CommandProvisioningConfig,
    EnvironmentConfig,
    PipelineConfig,
    ResourceLimits,
    RetryConfig,
    WebhookConfig,
    load_config,
)
from tierflow.schemas.pipeline import (
    ApprovalPolicy,
    AuthorizationDecision,
    DeploymentRequest,
    EnvironmentFreeze,
    EnvironmentStatus,
    EventKind,
    LockWindow,
    Operation,
    PipelineRun,
    Release,
    ReleaseType,
    RollbackRecord,
    RollbackStrategy,
    RunOutcome,
    RunSummary,
    SkipReason,
    StageName,
    StageState,
    StageStatus,
    Tier,
    TriggerDescriptor,
    TriggerEvent,
    TriggerType,
    VersionBump,
)

__all__ = [
    "ApprovalPolicy",
    "AuthorizationDecision",
    "CheckConfig",
    "CommandContentConfig",
    "CommandProvisioningConfig",
    "DeploymentRequest",
    "EnvironmentConfig",
    "EnvironmentFreeze",
    "EnvironmentStatus",
    "EventKind",
    "LockWindow",
    "Operation",
    "PipelineConfig",
    "PipelineRun",
    "Release",
    "ReleaseType",
    "ResourceLimits",
    "RetryConfig",
    "RollbackRecord",
    "RollbackStrategy",
    "RunOutcome",
    "RunSummary",
    "SkipReason",
    "StageName",
    "StageState",
    "StageStatus",
    "Tier",
    "TriggerDescriptor",
    "TriggerEvent",
    "TriggerType",
    "VersionBump",
    "WebhookConfig",
    "load_config",
]
