"""Unit tests for the authorization gate.

Tests cover:
- Tier policies (none, authenticated, owners)
- Elevated operations (rollback, hotfix, emergency) always use owners
- Reason requirements for hotfix and emergency operations
- Authorization source integration
- Recording of every decision
"""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from tierflow.pipeline.authorization import (
    AuthorizationGate,
    effective_policy,
    get_actor_identity,
    requires_reason,
)
from tierflow.pipeline.store import InMemoryStateStore
from tierflow.schemas.config import EnvironmentConfig, PipelineConfig
from tierflow.schemas.pipeline import ApprovalPolicy, Operation, Tier, TriggerType

DEV = EnvironmentConfig(name="dev", tier=Tier.DEV)
STAGING = EnvironmentConfig(name="staging", tier=Tier.STAGING)
PROD = EnvironmentConfig(name="prod", tier=Tier.PROD)


@pytest.fixture
def audit() -> MagicMock:
    return MagicMock()


@pytest.fixture
def gate(store: InMemoryStateStore, audit: MagicMock) -> AuthorizationGate:
    return AuthorizationGate(PipelineConfig(owners=["alice"]), store, audit=audit)


class TestEffectivePolicy:
    """Tests for policy selection."""

    def test_tier_defaults(self) -> None:
        """Each tier maps to its default policy."""
        assert effective_policy(DEV, Operation.DEPLOY, TriggerType.FEATURE_PUSH) == (
            ApprovalPolicy.NONE
        )
        assert effective_policy(STAGING, Operation.DEPLOY, TriggerType.MAIN_PUSH) == (
            ApprovalPolicy.AUTHENTICATED
        )
        assert effective_policy(PROD, Operation.RELEASE, TriggerType.RELEASE_TAG) == (
            ApprovalPolicy.OWNERS
        )

    @pytest.mark.parametrize("operation", [Operation.ROLLBACK, Operation.HOTFIX])
    def test_elevated_operations_use_owners(self, operation: Operation) -> None:
        """Rollbacks and hotfixes need an owner even on dev."""
        assert effective_policy(DEV, operation, TriggerType.MANUAL_DISPATCH) == (
            ApprovalPolicy.OWNERS
        )

    def test_emergency_uses_owners(self) -> None:
        """Emergency triggers need an owner."""
        assert effective_policy(STAGING, Operation.DEPLOY, TriggerType.EMERGENCY) == (
            ApprovalPolicy.OWNERS
        )

    def test_policy_override(self) -> None:
        """An explicit policy on the environment overrides the tier default."""
        env = EnvironmentConfig(name="prod", tier=Tier.PROD, approval_policy="authenticated")

        assert effective_policy(env, Operation.DEPLOY, TriggerType.MANUAL_DISPATCH) == (
            ApprovalPolicy.AUTHENTICATED
        )

    def test_requires_reason(self) -> None:
        """Hotfixes and emergencies carry a reason; plain deploys do not."""
        assert requires_reason(Operation.HOTFIX, TriggerType.MANUAL_DISPATCH)
        assert requires_reason(Operation.DEPLOY, TriggerType.EMERGENCY)
        assert not requires_reason(Operation.DEPLOY, TriggerType.MAIN_PUSH)


class TestAuthorizationGate:
    """Tests for authorization decisions."""

    def test_dev_allows_anyone(self, gate: AuthorizationGate) -> None:
        """No check is applied on the dev tier."""
        decision = gate.authorize("unknown", DEV, Operation.DEPLOY, TriggerType.FEATURE_PUSH)

        assert decision.allowed is True
        assert decision.policy == ApprovalPolicy.NONE

    def test_staging_allows_authenticated(self, gate: AuthorizationGate) -> None:
        """Any named actor passes the authenticated policy."""
        decision = gate.authorize("bob", STAGING, Operation.DEPLOY, TriggerType.MAIN_PUSH)

        assert decision.allowed is True

    @pytest.mark.parametrize("actor", ["unknown", "anonymous", "  "])
    def test_staging_rejects_anonymous(self, gate: AuthorizationGate, actor: str) -> None:
        """Anonymous identities never pass the authenticated policy."""
        decision = gate.authorize(actor, STAGING, Operation.DEPLOY, TriggerType.MAIN_PUSH)

        assert decision.allowed is False
        assert "not authenticated" in decision.policy_reason

    def test_prod_allows_owner(self, gate: AuthorizationGate) -> None:
        """Owners may release to prod."""
        decision = gate.authorize("alice", PROD, Operation.RELEASE, TriggerType.RELEASE_TAG)

        assert decision.allowed is True
        assert decision.policy_reason == "actor is in the owners set"

    def test_prod_denies_non_owner(self, gate: AuthorizationGate) -> None:
        """A release tag by a non-owner is denied."""
        decision = gate.authorize("bob", PROD, Operation.RELEASE, TriggerType.RELEASE_TAG)

        assert decision.allowed is False
        assert decision.policy_reason == "actor 'bob' is not an owner"

    def test_hotfix_requires_reason(self, gate: AuthorizationGate) -> None:
        """An owner's hotfix without a sufficient reason is denied."""
        short = gate.authorize(
            "alice", PROD, Operation.HOTFIX, TriggerType.MANUAL_DISPATCH, reason="oops"
        )
        missing = gate.authorize("alice", PROD, Operation.HOTFIX, TriggerType.MANUAL_DISPATCH)
        ok = gate.authorize(
            "alice",
            PROD,
            Operation.HOTFIX,
            TriggerType.MANUAL_DISPATCH,
            reason="checkout returns 500 for every order",
        )

        assert short.allowed is False
        assert "at least 10 characters" in short.policy_reason
        assert missing.allowed is False
        assert ok.allowed is True

    def test_rollback_by_non_owner_denied(self, gate: AuthorizationGate) -> None:
        """Rollbacks need an owner even on staging."""
        decision = gate.authorize(
            "bob", STAGING, Operation.ROLLBACK, TriggerType.MANUAL_DISPATCH, reason="bad build"
        )

        assert decision.allowed is False

    def test_decisions_are_recorded(
        self, gate: AuthorizationGate, store: InMemoryStateStore, audit: MagicMock
    ) -> None:
        """Every decision, allow or deny, is stored and audited."""
        gate.authorize("alice", PROD, Operation.RELEASE, TriggerType.RELEASE_TAG, run_id="r1")
        gate.authorize("bob", PROD, Operation.RELEASE, TriggerType.RELEASE_TAG, run_id="r2")

        decisions = store.list_authorizations("prod")
        assert [(d.actor, d.allowed, d.run_id) for d in decisions] == [
            ("alice", True, "r1"),
            ("bob", False, "r2"),
        ]
        assert audit.log_authorization.call_count == 2

    def test_decision_span(self, gate: AuthorizationGate, span_exporter: Any) -> None:
        """Each decision is traced with its result."""
        gate.authorize("bob", PROD, Operation.RELEASE, TriggerType.RELEASE_TAG)

        spans = span_exporter.get_finished_spans()
        assert [s.name for s in spans] == ["tierflow.authorize"]
        assert spans[0].attributes["tierflow.authorized"] is False
        assert spans[0].attributes["tierflow.policy"] == "owners"


class TestAuthorizationSource:
    """Tests for gates backed by an authorization source."""

    def test_owner_role_grants_prod(
        self, store: InMemoryStateStore, audit: MagicMock, fake_auth_source: Any
    ) -> None:
        """An actor with the owner role passes the owners policy."""
        source = fake_auth_source({"carol": "owner"})
        gate = AuthorizationGate(PipelineConfig(), store, source, audit)

        decision = gate.authorize("carol", PROD, Operation.RELEASE, TriggerType.RELEASE_TAG)

        assert decision.allowed is True
        assert decision.role == "owner"
        assert source.queries == [("carol", "prod")]

    def test_unknown_actor_denied_on_staging(
        self, store: InMemoryStateStore, audit: MagicMock, fake_auth_source: Any
    ) -> None:
        """With a source configured, staging requires a known actor."""
        gate = AuthorizationGate(PipelineConfig(), store, fake_auth_source({}), audit)

        decision = gate.authorize("mallory", STAGING, Operation.DEPLOY, TriggerType.MAIN_PUSH)

        assert decision.allowed is False
        assert "not known" in decision.policy_reason

    def test_developer_role_denied_on_prod(
        self, store: InMemoryStateStore, audit: MagicMock, fake_auth_source: Any
    ) -> None:
        """A known non-owner does not pass the owners policy."""
        gate = AuthorizationGate(PipelineConfig(), store, fake_auth_source({"bob": "dev"}), audit)

        decision = gate.authorize("bob", PROD, Operation.DEPLOY, TriggerType.MANUAL_DISPATCH)

        assert decision.allowed is False
        assert decision.role == "dev"


class TestGetActorIdentity:
    """Tests for actor identity resolution."""

    def test_explicit_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An explicit identity is used as is."""
        monkeypatch.setenv("TIERFLOW_ACTOR", "ci-bot")

        assert get_actor_identity("alice") == "alice"

    def test_environment_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """TIERFLOW_ACTOR is used when no identity is given."""
        monkeypatch.setenv("TIERFLOW_ACTOR", "ci-bot")

        assert get_actor_identity() == "ci-bot"

    def test_user_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """USER is the last resort before unknown."""
        monkeypatch.delenv("TIERFLOW_ACTOR", raising=False)
        monkeypatch.setenv("USER", "dave")

        assert get_actor_identity() == "dave"

    def test_unknown(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Without any source the identity is unknown."""
        monkeypatch.delenv("TIERFLOW_ACTOR", raising=False)
        monkeypatch.delenv("USER", raising=False)

        assert get_actor_identity() == "unknown"
