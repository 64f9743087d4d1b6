"""Pipeline configuration schemas.

This module defines the Pydantic v2 configuration for a tierflow pipeline,
normally loaded from a ``tierflow.yaml`` file.

Key Components:
    ResourceLimits: Per-environment timeouts and worker limits
    EnvironmentConfig: Configured environment (name, tier, policy, limits)
    CommandProvisioningConfig: Commands for the provisioning engine
    CommandContentConfig: Command for the content store
    CheckConfig: Validation check bound to a stage
    RetryConfig: Retry and convergence polling parameters
    WebhookConfig: Run notification webhook
    PipelineConfig: Top-level configuration

Example:
    >>> from tierflow.schemas.config import load_config
    >>> config = load_config("tierflow.yaml")
    >>> [env.name for env in config.environments]
    ['dev', 'staging', 'prod']
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tierflow.schemas.pipeline import (
    ApprovalPolicy,
    RunOutcome,
    StageName,
    Tier,
    TriggerType,
)

DEFAULT_TIER_POLICIES: dict[Tier, ApprovalPolicy] = {
    Tier.DEV: ApprovalPolicy.NONE,
    Tier.STAGING: ApprovalPolicy.AUTHENTICATED,
    Tier.PROD: ApprovalPolicy.OWNERS,
}

VALID_WEBHOOK_EVENTS: frozenset[str] = frozenset(o.value for o in RunOutcome) | {"rollback"}
"""Run outcomes plus ``rollback`` may be subscribed to."""

CHECK_STAGES: frozenset[StageName] = frozenset(
    {
        StageName.BUILD_VALIDATE,
        StageName.TEST_VALIDATE,
        StageName.POST_INFRA_VALIDATE,
        StageName.POST_DEPLOY_VALIDATE,
    }
)


class ResourceLimits(BaseModel):
    """Per-environment time and concurrency bounds.

    The run timeout dominates: no stage may run past the run deadline even
    if its own timeout has not expired.

    Attributes:
        validation_timeout_seconds: Timeout of each validation stage.
        infra_timeout_seconds: Timeout of infra-apply.
        content_timeout_seconds: Timeout of content-deploy.
        convergence_timeout_seconds: Bound on post-infra convergence polling.
        run_timeout_seconds: Wall-clock timeout of the whole run.
        lock_queue_timeout_seconds: How long a run may queue for the infra lock.
        max_validation_workers: Concurrent sibling checks per stage.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    validation_timeout_seconds: float = Field(default=600.0, gt=0)
    infra_timeout_seconds: float = Field(default=3600.0, gt=0)
    content_timeout_seconds: float = Field(default=1800.0, gt=0)
    convergence_timeout_seconds: float = Field(default=600.0, gt=0)
    run_timeout_seconds: float = Field(default=7200.0, gt=0)
    lock_queue_timeout_seconds: float = Field(default=3600.0, gt=0)
    max_validation_workers: int = Field(default=4, ge=1, le=64)


class EnvironmentConfig(BaseModel):
    """Configured environment.

    Attributes:
        name: Environment name (lowercase, alphanumeric with hyphens/underscores).
        tier: Risk tier.
        approval_policy: Policy override; defaults to the tier's policy.
        resource_limits: Timeouts and worker limits.

    Examples:
        >>> env = EnvironmentConfig(name="prod", tier="prod")
        >>> env.policy
        <ApprovalPolicy.OWNERS: 'owners'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        pattern=r"^[a-z][a-z0-9_-]*$",
        description="Environment name",
    )
    tier: Tier = Field(..., description="Risk tier")
    approval_policy: ApprovalPolicy | None = Field(
        default=None,
        description="Approval policy (defaults by tier)",
    )
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)

    @property
    def policy(self) -> ApprovalPolicy:
        """Effective approval policy."""
        if self.approval_policy is not None:
            return self.approval_policy
        return DEFAULT_TIER_POLICIES[self.tier]


def _default_environments() -> list[EnvironmentConfig]:
    """Create default environment configurations [dev, staging, prod]."""
    return [
        EnvironmentConfig(name="dev", tier=Tier.DEV),
        EnvironmentConfig(name="staging", tier=Tier.STAGING),
        EnvironmentConfig(name="prod", tier=Tier.PROD),
    ]


def _default_trigger_environments() -> dict[TriggerType, str]:
    return {
        TriggerType.FEATURE_PUSH: "dev",
        TriggerType.PULL_REQUEST: "staging",
        TriggerType.MAIN_PUSH: "staging",
        TriggerType.RELEASE_TAG: "prod",
    }


class CommandProvisioningConfig(BaseModel):
    """Commands backing the provisioning engine.

    ``{environment}`` and ``{version}`` placeholders are substituted before
    execution.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    apply_command: str = Field(..., min_length=1)
    plan_command: str = Field(..., min_length=1)
    working_dir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class CommandContentConfig(BaseModel):
    """Command backing the content store."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sync_command: str = Field(..., min_length=1)
    working_dir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class CheckConfig(BaseModel):
    """Validation check bound to a validation stage.

    Attributes:
        name: Check name, unique within its stage.
        stage: Validation stage that runs the check.
        type: ``command`` (exit code 0 passes) or ``http`` (status match passes).
        command: Shell command for command checks.
        url: URL for http checks; ``{environment}`` is substituted.
        expected_status: Expected HTTP status for http checks.
        timeout_seconds: Per-check timeout.
        environments: Restrict the check to these environments (all if unset).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    stage: StageName
    type: Literal["command", "http"] = "command"
    command: str | None = None
    url: str | None = None
    expected_status: int = Field(default=200, ge=100, le=599)
    timeout_seconds: float = Field(default=300.0, gt=0)
    environments: list[str] | None = None

    @field_validator("stage")
    @classmethod
    def validate_check_stage(cls, v: StageName) -> StageName:
        """Checks may only be attached to validation stages."""
        if v not in CHECK_STAGES:
            raise ValueError(
                f"Checks cannot run in '{v.value}'. "
                f"Valid stages: {sorted(s.value for s in CHECK_STAGES)}"
            )
        return v

    @model_validator(mode="after")
    def validate_target(self) -> CheckConfig:
        """Command checks need a command and http checks need a URL."""
        if self.type == "command" and not self.command:
            raise ValueError(f"Check '{self.name}' of type command requires 'command'")
        if self.type == "http" and not self.url:
            raise ValueError(f"Check '{self.name}' of type http requires 'url'")
        return self

    def applies_to(self, environment: str) -> bool:
        """Whether the check runs for the given environment."""
        return self.environments is None or environment in self.environments


class RetryConfig(BaseModel):
    """Retry and polling parameters.

    Attributes:
        transient_retries: Retries for transient provisioning errors (at most one).
        backoff_seconds: Delay before the retry.
        poll_interval_seconds: Initial convergence poll interval.
        poll_backoff_multiplier: Interval multiplier per poll.
        poll_max_interval_seconds: Cap on the poll interval.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    transient_retries: int = Field(default=1, ge=0, le=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    poll_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    poll_max_interval_seconds: float = Field(default=30.0, gt=0)


class WebhookConfig(BaseModel):
    """Webhook notification configuration.

    Attributes:
        url: Webhook endpoint URL.
        events: Run outcomes (or ``rollback``) that trigger a notification.
        headers: Custom headers (e.g., for authentication).
        timeout_seconds: Request timeout in seconds.
        retry_count: Number of retries on failure.

    Examples:
        >>> config = WebhookConfig(url="https://hooks.example.com/x", events=["failed"])
        >>> config.timeout_seconds
        30
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1, description="Webhook endpoint URL")
    events: list[str] = Field(..., min_length=1, description="Subscribed events")
    headers: dict[str, str] | None = Field(default=None)
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    retry_count: int = Field(default=3, ge=0, le=10)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        """Validate all events are valid webhook event types."""
        invalid = set(v) - VALID_WEBHOOK_EVENTS
        if invalid:
            raise ValueError(
                f"Invalid event types: {invalid}. Valid types: {sorted(VALID_WEBHOOK_EVENTS)}"
            )
        return v


class PipelineConfig(BaseModel):
    """Top-level pipeline configuration.

    Attributes:
        environments: Configured environments.
        owners: Identities allowed to act on owner-policy environments.
        main_branch: Main integration branch.
        tag_prefix: Prefix of release tags.
        trigger_defaults: Default environment per trigger type.
        fallback_environment: Environment used when nothing else resolves.
        min_reason_length: Minimum reason length for hotfix/emergency operations.
        initial_version: First release version of an empty lineage.
        provisioning: Command provisioning engine settings.
        content: Command content store settings.
        checks: Validation checks.
        retry: Retry and polling parameters.
        webhooks: Notification webhooks.
        authorization_registry: Path of the YAML actor registry.
        state_dir: Directory of the persistent state store.

    Examples:
        >>> config = PipelineConfig(owners=["alice"])
        >>> config.environment_names
        ['dev', 'staging', 'prod']
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environments: list[EnvironmentConfig] = Field(
        default_factory=_default_environments,
        min_length=1,
    )
    owners: list[str] = Field(default_factory=list)
    main_branch: str = Field(default="main", min_length=1)
    tag_prefix: str = Field(default="v")
    trigger_defaults: dict[TriggerType, str] = Field(
        default_factory=_default_trigger_environments,
    )
    fallback_environment: str | None = Field(default="dev")
    min_reason_length: int = Field(default=10, ge=1)
    initial_version: str = Field(default="1.0.0", pattern=r"^\d+\.\d+\.\d+$")
    provisioning: CommandProvisioningConfig | None = None
    content: CommandContentConfig | None = None
    checks: list[CheckConfig] = Field(default_factory=list)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    webhooks: list[WebhookConfig] | None = None
    authorization_registry: str | None = None
    state_dir: str | None = None

    @field_validator("environments")
    @classmethod
    def validate_unique_environment_names(
        cls, v: list[EnvironmentConfig]
    ) -> list[EnvironmentConfig]:
        """Validate that all environment names are unique."""
        names = [env.name for env in v]
        duplicates = [name for name in names if names.count(name) > 1]
        if duplicates:
            raise ValueError(
                f"Environment names must be unique. Duplicates found: {set(duplicates)}"
            )
        return v

    @model_validator(mode="after")
    def validate_environment_references(self) -> PipelineConfig:
        """Trigger defaults and the fallback must name configured environments."""
        names = set(self.environment_names)
        for trigger_type, env_name in self.trigger_defaults.items():
            if env_name not in names:
                raise ValueError(
                    f"trigger_defaults[{trigger_type.value}] references unknown "
                    f"environment '{env_name}'"
                )
        if self.fallback_environment is not None and self.fallback_environment not in names:
            raise ValueError(
                f"fallback_environment references unknown environment "
                f"'{self.fallback_environment}'"
            )
        return self

    @property
    def environment_names(self) -> list[str]:
        """Configured environment names in declaration order."""
        return [env.name for env in self.environments]

    def get_environment(self, name: str) -> EnvironmentConfig | None:
        """Return the named environment or None."""
        for env in self.environments:
            if env.name == name:
                return env
        return None

    def checks_for(self, stage: StageName, environment: str) -> list[CheckConfig]:
        """Checks configured for a stage in an environment."""
        return [c for c in self.checks if c.stage == stage and c.applies_to(environment)]


def load_config(path: str | Path) -> PipelineConfig:
    """Load a pipeline configuration from a YAML file.

    An empty file yields the default configuration.

    Args:
        path: Path of the YAML file.

    Returns:
        Validated PipelineConfig.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML root is not a mapping.
        pydantic.ValidationError: If the content is invalid.
    """
    config_path = Path(path)
    with config_path.open() as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {config_path}")
    return PipelineConfig.model_validate(data)


__all__ = [
    "CHECK_STAGES",
    "CheckConfig",
    "CommandContentConfig",
    "CommandProvisioningConfig",
    "DEFAULT_TIER_POLICIES",
    "EnvironmentConfig",
    "PipelineConfig",
    "ResourceLimits",
    "RetryConfig",
    "VALID_WEBHOOK_EVENTS",
    "WebhookConfig",
    "load_config",
]
