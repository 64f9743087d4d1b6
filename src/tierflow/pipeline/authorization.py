"""Authorization gate.

Applies the environment's approval policy to an actor before any stage
runs:

- ``none`` (dev tier): no check.
- ``authenticated`` (staging tier): any authenticated actor. When an
  authorization source is configured it must know the actor.
- ``owners`` (prod tier): the actor is in the configured owners set or the
  authorization source reports the ``owner`` role.

Rollback, hotfix and emergency operations are always evaluated with the
owners policy, whatever the target tier. Hotfix and emergency operations
additionally require a reason of at least ``min_reason_length`` characters.

Every decision, allow or deny, is recorded in the state store and the audit
log. The decision is cached on the run and never re-evaluated mid-run.

Example:
    >>> gate = AuthorizationGate(PipelineConfig(owners=["alice"]), InMemoryStateStore())
    >>> decision = gate.authorize("bob", prod_env, Operation.RELEASE, TriggerType.RELEASE_TAG)
    >>> decision.allowed
    False
"""

from __future__ import annotations

import os

import structlog

from tierflow.audit import AuditLogger, get_audit_logger
from tierflow.interfaces import AuthorizationSource
from tierflow.pipeline.store import InMemoryStateStore
from tierflow.schemas.config import EnvironmentConfig, PipelineConfig
from tierflow.schemas.pipeline import (
    ApprovalPolicy,
    AuthorizationDecision,
    Operation,
    TriggerType,
)
from tierflow.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

OWNER_ROLE = "owner"
ANONYMOUS_ACTORS: frozenset[str] = frozenset({"", "anonymous", "unknown"})
ELEVATED_OPERATIONS: frozenset[Operation] = frozenset({Operation.ROLLBACK, Operation.HOTFIX})


def get_actor_identity(explicit: str | None = None) -> str:
    """Resolve the acting identity.

    Tries, in order: the explicit value, the ``TIERFLOW_ACTOR`` environment
    variable, the ``USER`` environment variable. Falls back to ``unknown``,
    which never passes an authenticated or owners policy.
    """
    if explicit:
        return explicit
    env_actor = os.environ.get("TIERFLOW_ACTOR")
    if env_actor:
        logger.debug("actor_identity_from_env", identity=env_actor)
        return env_actor
    user = os.environ.get("USER")
    if user:
        return user
    logger.warning("actor_identity_unknown")
    return "unknown"


def effective_policy(
    environment: EnvironmentConfig,
    operation: Operation,
    trigger_type: TriggerType,
) -> ApprovalPolicy:
    """Policy applied to an operation on an environment."""
    if operation in ELEVATED_OPERATIONS or trigger_type == TriggerType.EMERGENCY:
        return ApprovalPolicy.OWNERS
    return environment.policy


def requires_reason(operation: Operation, trigger_type: TriggerType) -> bool:
    """Whether the operation must carry a justification."""
    return operation == Operation.HOTFIX or trigger_type == TriggerType.EMERGENCY


class AuthorizationGate:
    """Blocking, binary authorization gate.

    Args:
        config: Pipeline configuration (owners set, reason length).
        store: State store receiving every decision.
        source: Optional authorization source consulted for identity and roles.
        audit: Audit logger (defaults to the shared one).
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: InMemoryStateStore,
        source: AuthorizationSource | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.source = source
        self.audit = audit or get_audit_logger()

    def authorize(
        self,
        actor: str,
        environment: EnvironmentConfig,
        operation: Operation,
        trigger_type: TriggerType,
        *,
        reason: str | None = None,
        run_id: str | None = None,
    ) -> AuthorizationDecision:
        """Evaluate and record an authorization decision.

        Args:
            actor: Acting identity.
            environment: Target environment.
            operation: Requested operation.
            trigger_type: Classified trigger.
            reason: Operator justification.
            run_id: Run the decision belongs to.

        Returns:
            The recorded decision.
        """
        policy = effective_policy(environment, operation, trigger_type)
        log = logger.bind(
            actor=actor,
            environment=environment.name,
            operation=operation.value,
            policy=policy.value,
            run_id=run_id,
        )
        with create_span(
            "tierflow.authorize",
            attributes={
                "tierflow.actor": actor,
                "tierflow.environment": environment.name,
                "tierflow.operation": operation.value,
                "tierflow.policy": policy.value,
            },
        ) as span:
            allowed, policy_reason, role = self._evaluate(actor, environment.name, policy)
            if allowed and requires_reason(operation, trigger_type):
                allowed, policy_reason = self._check_reason(reason, policy_reason)

            decision = AuthorizationDecision(
                actor=actor,
                environment=environment.name,
                operation=operation,
                allowed=allowed,
                policy_reason=policy_reason,
                policy=policy,
                role=role,
                run_id=run_id,
            )
            span.set_attribute("tierflow.authorized", allowed)

        self.store.record_authorization(decision)
        self.audit.log_authorization(decision)
        if allowed:
            log.info("authorization_allowed", reason=policy_reason)
        else:
            log.warning("authorization_denied", reason=policy_reason)
        return decision

    def _evaluate(
        self, actor: str, environment: str, policy: ApprovalPolicy
    ) -> tuple[bool, str, str | None]:
        if policy == ApprovalPolicy.NONE:
            return True, "no authorization required", None

        if actor.strip().lower() in ANONYMOUS_ACTORS:
            return False, f"actor '{actor}' is not authenticated", None

        role: str | None = None
        known = True
        if self.source is not None:
            answer = self.source.query(actor, environment)
            role = answer.role
            known = answer.allowed

        if policy == ApprovalPolicy.AUTHENTICATED:
            if not known:
                return False, f"actor '{actor}' is not known to the authorization source", role
            return True, "authenticated actor", role

        if actor in self.config.owners:
            return True, "actor is in the owners set", role
        if known and role == OWNER_ROLE:
            return True, "actor has the owner role", role
        return False, f"actor '{actor}' is not an owner", role

    def _check_reason(self, reason: str | None, policy_reason: str) -> tuple[bool, str]:
        minimum = self.config.min_reason_length
        if reason is None or len(reason.strip()) < minimum:
            return False, f"a reason of at least {minimum} characters is required"
        return True, policy_reason


__all__ = [
    "ANONYMOUS_ACTORS",
    "AuthorizationGate",
    "OWNER_ROLE",
    "effective_policy",
    "get_actor_identity",
    "requires_reason",
]
