"""Environment resolution.

The resolver is a pure function of (trigger type, explicit environment,
configuration): the first defined value in the chain wins.

1. Explicit environment from the caller.
2. Trigger-type default (emergency triggers have none and require (1)).
3. Configured fallback environment.

The result is validated against the configured environment set before any
stage runs.
"""

from __future__ import annotations

from tierflow.errors import InvalidEnvironment
from tierflow.schemas.config import EnvironmentConfig, PipelineConfig
from tierflow.schemas.pipeline import TriggerType


def resolve_environment(
    trigger_type: TriggerType,
    explicit_environment: str | None,
    config: PipelineConfig,
) -> EnvironmentConfig:
    """Resolve the target environment for a trigger.

    Args:
        trigger_type: Classified trigger type.
        explicit_environment: Environment requested by the caller, if any.
        config: Pipeline configuration.

    Returns:
        The configured environment.

    Raises:
        InvalidEnvironment: If an emergency trigger names no environment, nothing
            resolves, or the resolved name is not configured.

    Examples:
        >>> config = PipelineConfig()
        >>> resolve_environment(TriggerType.MAIN_PUSH, None, config).name
        'staging'
        >>> resolve_environment(TriggerType.MAIN_PUSH, "dev", config).name
        'dev'
    """
    name: str | None
    if explicit_environment:
        name = explicit_environment
    elif trigger_type == TriggerType.EMERGENCY:
        raise InvalidEnvironment(None, config.environment_names)
    else:
        name = config.trigger_defaults.get(trigger_type) or config.fallback_environment

    if name is None:
        raise InvalidEnvironment(None, config.environment_names)
    environment = config.get_environment(name)
    if environment is None:
        raise InvalidEnvironment(name, config.environment_names)
    return environment


__all__ = ["resolve_environment"]
