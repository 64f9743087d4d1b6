"""Rollback engine.

Restores an environment to an earlier release. Four strategies select what
is restored:

- ``last_known_good``: the most recent release strictly earlier than the
  current one whose deployment succeeded; the full stage graph runs.
- ``specific_revision``: the release matching a caller-supplied version or
  source revision; the full stage graph runs.
- ``infrastructure_only``: only infra-apply and post-infra-validate run.
- ``content_only``: only content-deploy and post-deploy-validate run.

The partial strategies target the supplied revision when one is given and
the last known good release otherwise. A release that never deployed
successfully is never a rollback target.

Every invocation produces an immutable RollbackRecord, including rejected
and failed rollbacks. The actor is authorized before any target is
selected; a rejected rollback's record carries no target or version tag.
"""

from __future__ import annotations

from collections.abc import Callable, Collection

import structlog

from tierflow.audit import AuditLogger, get_audit_logger
from tierflow.errors import RollbackTargetNotFound
from tierflow.pipeline.authorization import AuthorizationGate
from tierflow.pipeline.executor import CONTENT_STAGES, INFRA_STAGES, StageExecutor
from tierflow.pipeline.locks import CancellationToken
from tierflow.pipeline.status import StatusReporter
from tierflow.pipeline.store import InMemoryStateStore
from tierflow.pipeline.versions import SemanticVersion, VersionManager
from tierflow.schemas.config import EnvironmentConfig
from tierflow.schemas.pipeline import (
    STAGE_ORDER,
    DeploymentRequest,
    Operation,
    PipelineRun,
    Release,
    ReleaseType,
    RollbackRecord,
    RollbackStrategy,
    RunOutcome,
    StageName,
    TriggerType,
    new_id,
)
from tierflow.telemetry.tracing import create_span, current_trace_id

logger = structlog.get_logger(__name__)

STRATEGY_STAGES: dict[RollbackStrategy, tuple[StageName, ...]] = {
    RollbackStrategy.LAST_KNOWN_GOOD: STAGE_ORDER,
    RollbackStrategy.SPECIFIC_REVISION: STAGE_ORDER,
    RollbackStrategy.INFRASTRUCTURE_ONLY: INFRA_STAGES,
    RollbackStrategy.CONTENT_ONLY: CONTENT_STAGES,
}


class RollbackEngine:
    """Selects rollback targets and executes rollbacks.

    Args:
        store: State store holding releases, outcomes and rollback records.
        gate: Authorization gate.
        versions: Version manager used for rollback tags.
        executor: Stage executor.
        status: Status reporter updated with the rollback run.
        tag_prefix: Release tag prefix stripped from revision references.
        audit: Audit logger (defaults to the shared one).
    """

    def __init__(
        self,
        store: InMemoryStateStore,
        gate: AuthorizationGate,
        versions: VersionManager,
        executor: StageExecutor,
        status: StatusReporter,
        *,
        tag_prefix: str = "v",
        audit: AuditLogger | None = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.versions = versions
        self.executor = executor
        self.status = status
        self.tag_prefix = tag_prefix
        self.audit = audit or get_audit_logger()

    # ------------------------------------------------------------------
    # Target selection
    # ------------------------------------------------------------------

    def _deployed(self, release: Release) -> bool:
        outcome = self.store.release_outcome(release.environment, release.version)
        return outcome == RunOutcome.DEPLOYED

    def _candidates(self, environment: str) -> list[Release]:
        releases = self.store.list_releases(environment)
        return [r for r in releases if r.release_type != ReleaseType.ROLLBACK]

    def last_known_good(self, environment: str) -> Release:
        """Most recent successfully deployed release older than the current one.

        Raises:
            RollbackTargetNotFound: If no release qualifies.
        """
        current = self.versions.latest(environment)
        if current is None:
            raise RollbackTargetNotFound(environment, "no releases recorded")
        eligible = [
            r
            for r in self._candidates(environment)
            if SemanticVersion.parse(r.version) < current and self._deployed(r)
        ]
        if not eligible:
            raise RollbackTargetNotFound(
                environment, f"no successfully deployed release older than {current}"
            )
        return max(eligible, key=lambda r: SemanticVersion.parse(r.version))

    def find_revision(self, environment: str, revision: str) -> Release:
        """Release matching a version or source revision.

        Raises:
            RollbackTargetNotFound: If nothing matches or the match never deployed.
        """
        reference = revision.strip()
        unprefixed = reference[len(self.tag_prefix) :]
        if reference.startswith(self.tag_prefix) and unprefixed[:1].isdigit():
            reference = unprefixed
        matches = [
            r
            for r in self._candidates(environment)
            if r.version == reference or r.source_revision == revision.strip()
        ]
        if not matches:
            raise RollbackTargetNotFound(environment, f"no release matches '{revision}'")
        deployed = [r for r in matches if self._deployed(r)]
        if not deployed:
            raise RollbackTargetNotFound(
                environment, f"release '{revision}' was never successfully deployed"
            )
        return max(deployed, key=lambda r: SemanticVersion.parse(r.version))

    def select_target(
        self,
        environment: str,
        strategy: RollbackStrategy,
        revision: str | None = None,
    ) -> Release:
        """Select the release a strategy restores.

        Raises:
            RollbackTargetNotFound: If no release qualifies.
        """
        if strategy == RollbackStrategy.SPECIFIC_REVISION:
            if not revision:
                raise RollbackTargetNotFound(
                    environment, "specific_revision requires a revision reference"
                )
            return self.find_revision(environment, revision)
        if strategy == RollbackStrategy.LAST_KNOWN_GOOD or not revision:
            return self.last_known_good(environment)
        return self.find_revision(environment, revision)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def rollback(
        self,
        environment: EnvironmentConfig,
        strategy: RollbackStrategy,
        actor: str,
        reason: str | None,
        *,
        revision: str | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL_DISPATCH,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
        stages: Collection[StageName] | None = None,
        on_update: Callable[[PipelineRun], None] | None = None,
    ) -> tuple[PipelineRun, RollbackRecord]:
        """Roll an environment back.

        Args:
            environment: Environment to roll back.
            strategy: Rollback strategy.
            actor: Acting identity.
            reason: Operator justification.
            revision: Version or source revision for revision-based strategies.
            trigger_type: Trigger that requested the rollback.
            dry_run: Plan only; no release is created and status is untouched.
            cancel: Cancellation token.
            stages: Override of the strategy's stage selection.
            on_update: Called after every run state change.

        Returns:
            The terminal run and its rollback record.

        Raises:
            RollbackTargetNotFound: If no release qualifies as target.
        """
        env_name = environment.name
        save = on_update or self.store.save_run
        log = logger.bind(environment=env_name, strategy=strategy.value, actor=actor)

        with create_span(
            "tierflow.rollback",
            attributes={
                "tierflow.environment": env_name,
                "tierflow.strategy": strategy.value,
                "tierflow.actor": actor,
                "tierflow.dry_run": dry_run,
            },
        ) as span:
            run_id = new_id()
            decision = self.gate.authorize(
                actor,
                environment,
                Operation.ROLLBACK,
                trigger_type,
                reason=reason,
                run_id=run_id,
            )
            target: Release | None = None
            current: SemanticVersion | None = None
            version_tag: str | None = None

            if not decision.allowed:
                # No target is selected for an actor who may not roll back.
                run = PipelineRun(
                    id=run_id,
                    request=DeploymentRequest(
                        trigger_type=trigger_type,
                        source_ref=revision or strategy.value,
                        actor=actor,
                        operation=Operation.ROLLBACK,
                        explicit_environment=env_name,
                        reason=reason,
                        dry_run=dry_run,
                    ),
                    resolved_environment=env_name,
                    release_type=ReleaseType.ROLLBACK,
                    trace_id=current_trace_id(),
                    authorization=decision,
                )
                save(run)
                self.executor.abort(
                    run, RunOutcome.REJECTED, "AUTHORIZATION_DENIED", decision.policy_reason
                )
            else:
                target = self.select_target(env_name, strategy, revision)
                current = self.versions.latest(env_name)
                version_tag = self.versions.rollback_tag(target.version)
                span.set_attribute("tierflow.target_version", target.version)
                log.info(
                    "rollback_target_selected",
                    target_version=target.version,
                    previous_version=str(current) if current else None,
                    version_tag=version_tag,
                )
                run = PipelineRun(
                    id=run_id,
                    request=DeploymentRequest(
                        trigger_type=trigger_type,
                        source_ref=revision or target.version,
                        actor=actor,
                        operation=Operation.ROLLBACK,
                        explicit_environment=env_name,
                        reason=reason,
                        source_revision=target.source_revision,
                        dry_run=dry_run,
                    ),
                    resolved_environment=env_name,
                    version=target.version,
                    release_type=ReleaseType.ROLLBACK,
                    trace_id=current_trace_id(),
                    authorization=decision,
                )
                save(run)
                try:
                    if not dry_run:
                        self.versions.create_release(
                            env_name,
                            version_tag,
                            ReleaseType.ROLLBACK,
                            source_revision=target.source_revision,
                            commits=(f"rollback to {target.version}",),
                            run_id=run.id,
                        )
                    selection = stages if stages is not None else STRATEGY_STAGES[strategy]
                    self.executor.execute(
                        run, environment, stages=selection, cancel=cancel, on_update=save
                    )
                except Exception as e:
                    if run.is_terminal:
                        raise
                    self.executor.abort_on_error(run, e)
                if not dry_run and run.outcome is not None:
                    self.store.record_release_outcome(env_name, version_tag, run.outcome, run.id)

            save(run)
            self.status.report(run)
            assert run.outcome is not None
            span.set_attribute("tierflow.outcome", run.outcome.value)

            record = RollbackRecord(
                strategy=strategy,
                environment=env_name,
                target_reference=revision or (target.version if target else strategy.value),
                target_version=target.version if target else None,
                target_revision=target.source_revision if target else None,
                previous_version=str(current) if current else None,
                version_tag=version_tag,
                initiated_by=actor,
                reason=reason or "",
                run_id=run.id,
                outcome=run.outcome,
                outcome_code=run.outcome_code,
            )
            self.store.add_rollback(record)
            self.audit.log_rollback(record)
            log.info(
                "rollback_finished",
                run_id=run.id,
                outcome=run.outcome.value,
                outcome_code=run.outcome_code,
            )
        return run, record


__all__ = ["RollbackEngine", "STRATEGY_STAGES"]
