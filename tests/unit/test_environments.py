"""Unit tests for environment resolution."""

from __future__ import annotations

import pytest

from tierflow.errors import InvalidEnvironment
from tierflow.pipeline.environments import resolve_environment
from tierflow.schemas.config import EnvironmentConfig, PipelineConfig
from tierflow.schemas.pipeline import Tier, TriggerType


class TestResolveEnvironment:
    """Tests for the explicit > trigger default > fallback chain."""

    @pytest.mark.parametrize(
        ("trigger_type", "expected"),
        [
            (TriggerType.FEATURE_PUSH, "dev"),
            (TriggerType.PULL_REQUEST, "staging"),
            (TriggerType.MAIN_PUSH, "staging"),
            (TriggerType.RELEASE_TAG, "prod"),
        ],
    )
    def test_trigger_defaults(self, trigger_type: TriggerType, expected: str) -> None:
        """Each trigger type resolves to its default environment."""
        assert resolve_environment(trigger_type, None, PipelineConfig()).name == expected

    def test_explicit_environment_wins(self) -> None:
        """An explicit environment overrides the trigger default."""
        env = resolve_environment(TriggerType.RELEASE_TAG, "staging", PipelineConfig())

        assert env.name == "staging"
        assert env.tier == Tier.STAGING

    def test_manual_dispatch_uses_fallback(self) -> None:
        """A trigger without a default resolves to the fallback environment."""
        env = resolve_environment(TriggerType.MANUAL_DISPATCH, None, PipelineConfig())

        assert env.name == "dev"

    def test_emergency_requires_explicit_environment(self) -> None:
        """Emergency triggers never fall back to a default."""
        with pytest.raises(InvalidEnvironment, match="No environment could be resolved"):
            resolve_environment(TriggerType.EMERGENCY, None, PipelineConfig())

    def test_emergency_with_explicit_environment(self) -> None:
        """Emergency triggers resolve to the explicit environment."""
        env = resolve_environment(TriggerType.EMERGENCY, "prod", PipelineConfig())

        assert env.name == "prod"

    def test_unknown_environment(self) -> None:
        """A name that is not configured is rejected with the configured names."""
        with pytest.raises(InvalidEnvironment) as exc_info:
            resolve_environment(TriggerType.MANUAL_DISPATCH, "qa", PipelineConfig())

        assert exc_info.value.environment == "qa"
        assert exc_info.value.available == ["dev", "staging", "prod"]
        assert exc_info.value.exit_code == 11

    def test_nothing_resolves(self) -> None:
        """Without default or fallback the resolution fails."""
        config = PipelineConfig(
            environments=[EnvironmentConfig(name="prod", tier=Tier.PROD)],
            trigger_defaults={},
            fallback_environment=None,
        )

        with pytest.raises(InvalidEnvironment):
            resolve_environment(TriggerType.MAIN_PUSH, None, config)

    def test_resolution_is_deterministic(self) -> None:
        """Identical inputs always resolve to the same environment."""
        config = PipelineConfig()
        results = {
            resolve_environment(TriggerType.PULL_REQUEST, None, config).name for _ in range(10)
        }

        assert results == {"staging"}
