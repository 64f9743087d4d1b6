"""Pipeline controller.

Drives one deployment request through the control flow::

    event -> classify -> resolve environment -> authorize -> freeze check
          -> version (releases only) -> execute stages -> record -> report

Errors raised before a run exists (malformed event, unknown environment,
missing rollback target) propagate to the caller. Once a run exists, every
error becomes the run's terminal outcome code and reason, and the run is
recorded, reported and published.

Example:
    >>> controller = PipelineController(config, provisioning, content)
    >>> run = controller.handle_event(event)
    >>> run.outcome
    <RunOutcome.DEPLOYED: 'deployed'>
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import structlog

from tierflow.audit import AuditLogger, get_audit_logger
from tierflow.errors import (
    AuthorizationDenied,
    EnvironmentFrozenError,
    InvalidEnvironment,
    MalformedEventError,
    VersionRegressionError,
)
from tierflow.interfaces import (
    AuthorizationSource,
    ContentStore,
    NotificationSink,
    ProvisioningEngine,
)
from tierflow.pipeline.authorization import AuthorizationGate
from tierflow.pipeline.environments import resolve_environment
from tierflow.pipeline.executor import CheckRegistry, StageExecutor
from tierflow.pipeline.locks import CancellationToken, EnvironmentLockManager
from tierflow.pipeline.rollback import RollbackEngine
from tierflow.pipeline.status import StatusReporter
from tierflow.pipeline.store import FileStateStore, InMemoryStateStore
from tierflow.pipeline.triggers import TriggerClassifier
from tierflow.pipeline.versions import SemanticVersion, VersionManager
from tierflow.schemas.config import EnvironmentConfig, PipelineConfig
from tierflow.schemas.pipeline import (
    DeploymentRequest,
    EnvironmentFreeze,
    EnvironmentStatus,
    Operation,
    PipelineRun,
    ReleaseType,
    RollbackStrategy,
    RunOutcome,
    RunSummary,
    Tier,
    TriggerDescriptor,
    TriggerEvent,
    TriggerType,
)
from tierflow.telemetry.sanitization import sanitize_error_message
from tierflow.telemetry.tracing import create_span, current_trace_id

logger = structlog.get_logger(__name__)

FREEZE_EXEMPT_OPERATIONS: frozenset[Operation] = frozenset(
    {Operation.ROLLBACK, Operation.HOTFIX}
)


def commit_messages(payload: Mapping[str, Any]) -> tuple[str, ...]:
    """Commit subjects from an event payload's ``commits`` list."""
    commits = payload.get("commits") or []
    messages: list[str] = []
    if isinstance(commits, list):
        for commit in commits:
            if isinstance(commit, Mapping) and isinstance(commit.get("message"), str):
                messages.append(commit["message"])
            elif isinstance(commit, str):
                messages.append(commit)
    return tuple(messages)


def _payload_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) and value.strip() else None


class PipelineController:
    """Orchestrates deployment, release, hotfix and rollback runs.

    Args:
        config: Pipeline configuration.
        provisioning: Provisioning engine.
        content: Content store.
        store: State store (in-memory by default).
        auth_source: Optional authorization source.
        notifiers: Notification sinks receiving terminal run summaries.
        checks: Validation checks keyed by stage or (stage, environment).
        locks: Environment lock manager (created on the store by default).
        sleep: Sleep function used for retry backoff and polling.
        monotonic: Monotonic clock used for timeouts.
        clock: Millisecond clock for hotfix and rollback suffixes.
        audit: Audit logger.
    """

    def __init__(
        self,
        config: PipelineConfig,
        provisioning: ProvisioningEngine,
        content: ContentStore,
        *,
        store: InMemoryStateStore | None = None,
        auth_source: AuthorizationSource | None = None,
        notifiers: Iterable[NotificationSink] = (),
        checks: CheckRegistry | None = None,
        locks: EnvironmentLockManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], int] | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else InMemoryStateStore()
        self.audit = audit or get_audit_logger()
        self.notifiers = list(notifiers)
        self.classifier = TriggerClassifier(config.main_branch, config.tag_prefix)
        self.gate = AuthorizationGate(config, self.store, auth_source, self.audit)
        self.versions = VersionManager(self.store, config.initial_version, clock)
        self.locks = locks or EnvironmentLockManager(self.store, monotonic)
        self.executor = StageExecutor(
            provisioning,
            content,
            self.locks,
            checks=checks,
            retry=config.retry,
            sleep=sleep,
            monotonic=monotonic,
        )
        self.status_reporter = StatusReporter(self.store)
        self.rollback_engine = RollbackEngine(
            self.store,
            self.gate,
            self.versions,
            self.executor,
            self.status_reporter,
            tag_prefix=config.tag_prefix,
            audit=self.audit,
        )
        self._tokens: dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        *,
        state_dir: str | None = None,
    ) -> PipelineController:
        """Build a controller with the command adapters described by the config.

        Raises:
            ValueError: If provisioning or content commands are not configured.
        """
        from tierflow.adapters.checks import build_checks
        from tierflow.adapters.command import CommandContentStore, CommandProvisioningEngine
        from tierflow.adapters.registry import RegistryAuthorizationSource
        from tierflow.adapters.webhooks import WebhookNotificationSink, WebhookNotifier

        if config.provisioning is None:
            raise ValueError("provisioning commands are not configured")
        if config.content is None:
            raise ValueError("content commands are not configured")

        directory = state_dir or config.state_dir
        store = FileStateStore(directory) if directory else InMemoryStateStore()
        source = (
            RegistryAuthorizationSource.from_file(config.authorization_registry)
            if config.authorization_registry
            else None
        )
        notifiers: list[NotificationSink] = []
        if config.webhooks:
            notifiers.append(WebhookNotificationSink(WebhookNotifier(config.webhooks)))
        return cls(
            config,
            CommandProvisioningEngine(config.provisioning),
            CommandContentStore(config.content),
            store=store,
            auth_source=source,
            notifiers=notifiers,
            checks=build_checks(config),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_event(
        self,
        event: TriggerEvent | Mapping[str, Any],
        *,
        dry_run: bool = False,
    ) -> PipelineRun:
        """Classify an inbound event and run it through the control flow.

        Raises:
            MalformedEventError: If the event cannot be classified.
            InvalidEnvironment: If no configured environment resolves.
            RollbackTargetNotFound: If an emergency rollback has no target.
        """
        if isinstance(event, TriggerEvent):
            descriptor = self.classifier.classify(event)
        else:
            event, descriptor = self.classifier.classify_raw(event)
        log = logger.bind(trigger_type=descriptor.trigger_type.value, actor=event.actor)
        log.info("event_received", ref=descriptor.ref)

        operation = self._operation_for(event, descriptor)
        if operation == Operation.ROLLBACK:
            return self._rollback_from_event(event, descriptor, dry_run=dry_run)

        request = DeploymentRequest(
            trigger_type=descriptor.trigger_type,
            source_ref=descriptor.ref,
            actor=event.actor,
            operation=operation,
            explicit_environment=event.explicit_environment,
            explicit_version_request=descriptor.tag_version or event.explicit_version_request,
            reason=event.reason,
            source_revision=_payload_str(event.payload, "revision")
            or _payload_str(event.payload, "sha"),
            commits=commit_messages(event.payload),
            dry_run=dry_run,
        )
        return self.run_request(request)

    def deploy(
        self,
        environment: str,
        actor: str,
        *,
        ref: str = "",
        source_revision: str | None = None,
        reason: str | None = None,
        dry_run: bool = False,
    ) -> PipelineRun:
        """Manually deploy to an environment."""
        return self.run_request(
            DeploymentRequest(
                trigger_type=TriggerType.MANUAL_DISPATCH,
                source_ref=ref,
                actor=actor,
                operation=Operation.DEPLOY,
                explicit_environment=environment,
                reason=reason,
                source_revision=source_revision,
                dry_run=dry_run,
            )
        )

    def release(
        self,
        environment: str,
        actor: str,
        version_request: str | None = None,
        *,
        ref: str = "",
        source_revision: str | None = None,
        commits: Iterable[str] = (),
        reason: str | None = None,
        dry_run: bool = False,
    ) -> PipelineRun:
        """Cut a release (bump name or explicit version) and deploy it."""
        return self.run_request(
            DeploymentRequest(
                trigger_type=TriggerType.MANUAL_DISPATCH,
                source_ref=ref,
                actor=actor,
                operation=Operation.RELEASE,
                explicit_environment=environment,
                explicit_version_request=version_request,
                reason=reason,
                source_revision=source_revision,
                commits=tuple(commits),
                dry_run=dry_run,
            )
        )

    def hotfix(
        self,
        environment: str,
        actor: str,
        reason: str | None,
        *,
        ref: str = "",
        source_revision: str | None = None,
        commits: Iterable[str] = (),
        emergency: bool = False,
        dry_run: bool = False,
    ) -> PipelineRun:
        """Cut and deploy a hotfix release."""
        return self.run_request(
            DeploymentRequest(
                trigger_type=TriggerType.EMERGENCY if emergency else TriggerType.MANUAL_DISPATCH,
                source_ref=ref,
                actor=actor,
                operation=Operation.HOTFIX,
                explicit_environment=environment,
                reason=reason,
                source_revision=source_revision,
                commits=tuple(commits),
                dry_run=dry_run,
            )
        )

    def rollback(
        self,
        environment: str,
        strategy: RollbackStrategy,
        actor: str,
        reason: str | None,
        *,
        revision: str | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL_DISPATCH,
        dry_run: bool = False,
    ) -> PipelineRun:
        """Roll an environment back.

        Raises:
            InvalidEnvironment: If the environment is not configured.
            RollbackTargetNotFound: If no release qualifies as target.
        """
        env = self._environment(environment)
        token = CancellationToken()
        run, _record = self.rollback_engine.rollback(
            env,
            strategy,
            actor,
            reason,
            revision=revision,
            trigger_type=trigger_type,
            dry_run=dry_run,
            cancel=token,
            on_update=lambda r: self._track(r, token),
        )
        self._untrack(run)
        self._publish(run)
        return run

    def run_request(self, request: DeploymentRequest) -> PipelineRun:
        """Run a deployment request through the control flow.

        Raises:
            InvalidEnvironment: If no configured environment resolves.
        """
        env = resolve_environment(request.trigger_type, request.explicit_environment, self.config)
        run = PipelineRun(request=request, resolved_environment=env.name)
        token = CancellationToken()
        log = logger.bind(run_id=run.id, environment=env.name, operation=request.operation.value)

        with create_span(
            "tierflow.pipeline.run",
            attributes={
                "tierflow.run_id": run.id,
                "tierflow.environment": env.name,
                "tierflow.trigger_type": request.trigger_type.value,
                "tierflow.operation": request.operation.value,
                "tierflow.actor": request.actor,
                "tierflow.dry_run": request.dry_run,
            },
        ) as span:
            run.trace_id = current_trace_id()
            self._track(run, token)
            log.info("run_started", trigger_type=request.trigger_type.value)
            try:
                self._drive(run, env, token)
            except Exception as e:
                if run.is_terminal:
                    raise
                self.executor.abort_on_error(run, e)
                self.store.save_run(run)
            finally:
                self._untrack(run)
            assert run.outcome is not None
            span.set_attribute("tierflow.outcome", run.outcome.value)
            if run.outcome_code:
                span.set_attribute("tierflow.outcome_code", run.outcome_code)

        self.status_reporter.report(run)
        self._publish(run)
        return run

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    def cancel(self, run_id: str, reason: str = "cancelled by operator") -> bool:
        """Request cancellation of an in-flight run.

        Returns:
            True if the run was in flight and is now flagged for cancellation.
        """
        with self._tokens_lock:
            token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info("run_cancel_requested", run_id=run_id, reason=reason)
        return True

    def freeze_environment(self, environment: str, actor: str, reason: str) -> EnvironmentFreeze:
        """Freeze an environment for deploys and releases.

        Raises:
            InvalidEnvironment: If the environment is not configured.
            AuthorizationDenied: If the actor may not act on the environment.
        """
        env = self._environment(environment)
        self._authorize_admin(env, actor, reason)
        freeze = EnvironmentFreeze(environment=env.name, frozen_by=actor, reason=reason)
        self.store.set_freeze(freeze)
        self.audit.log_freeze(freeze, frozen=True, actor=actor)
        logger.info("environment_frozen", environment=env.name, actor=actor)
        return freeze

    def unfreeze_environment(self, environment: str, actor: str) -> EnvironmentFreeze | None:
        """Lift an environment freeze.

        Returns:
            The lifted freeze, or None if the environment was not frozen.

        Raises:
            InvalidEnvironment: If the environment is not configured.
            AuthorizationDenied: If the actor may not act on the environment.
        """
        env = self._environment(environment)
        self._authorize_admin(env, actor, None)
        freeze = self.store.clear_freeze(env.name)
        if freeze is not None:
            self.audit.log_freeze(freeze, frozen=False, actor=actor)
            logger.info("environment_unfrozen", environment=env.name, actor=actor)
        return freeze

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> dict[str, EnvironmentStatus]:
        """Current status record of every reported environment."""
        return self.status_reporter.all()

    def history(
        self, environment: str | None = None, limit: int | None = None
    ) -> list[PipelineRun]:
        """Terminal runs, most recent first.

        Raises:
            InvalidEnvironment: If ``environment`` is not configured.
        """
        if environment is not None:
            self._environment(environment)
        return self.store.list_runs(environment, terminal_only=True, limit=limit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _environment(self, name: str) -> EnvironmentConfig:
        env = self.config.get_environment(name)
        if env is None:
            raise InvalidEnvironment(name, self.config.environment_names)
        return env

    def _operation_for(self, event: TriggerEvent, descriptor: TriggerDescriptor) -> Operation:
        requested = _payload_str(event.payload, "operation")
        if descriptor.trigger_type == TriggerType.EMERGENCY:
            if requested not in (None, Operation.HOTFIX.value, Operation.ROLLBACK.value):
                raise MalformedEventError(
                    f"emergency operation must be hotfix or rollback, got '{requested}'"
                )
            return Operation(requested) if requested else Operation.HOTFIX
        if descriptor.trigger_type == TriggerType.RELEASE_TAG:
            if descriptor.release_type == ReleaseType.HOTFIX:
                return Operation.HOTFIX
            if descriptor.release_type == ReleaseType.ROLLBACK:
                return Operation.ROLLBACK
            return Operation.RELEASE
        if descriptor.trigger_type == TriggerType.MANUAL_DISPATCH and requested:
            try:
                return Operation(requested)
            except ValueError as e:
                raise MalformedEventError(f"unknown operation '{requested}'") from e
        return Operation.DEPLOY

    def _rollback_from_event(
        self,
        event: TriggerEvent,
        descriptor: TriggerDescriptor,
        *,
        dry_run: bool,
    ) -> PipelineRun:
        environment = event.explicit_environment or self.config.trigger_defaults.get(
            descriptor.trigger_type
        )
        if environment is None:
            raise InvalidEnvironment(None, self.config.environment_names)

        revision = _payload_str(event.payload, "revision")
        strategy_name = _payload_str(event.payload, "strategy")
        if descriptor.release_type == ReleaseType.ROLLBACK and descriptor.tag_version:
            revision = str(SemanticVersion.parse(descriptor.tag_version).base)
            strategy_name = strategy_name or RollbackStrategy.SPECIFIC_REVISION.value
        try:
            strategy = RollbackStrategy(strategy_name or RollbackStrategy.LAST_KNOWN_GOOD.value)
        except ValueError as e:
            raise MalformedEventError(f"unknown rollback strategy '{strategy_name}'") from e
        return self.rollback(
            environment,
            strategy,
            event.actor,
            event.reason,
            revision=revision,
            trigger_type=descriptor.trigger_type,
            dry_run=dry_run,
        )

    def _drive(self, run: PipelineRun, env: EnvironmentConfig, token: CancellationToken) -> None:
        request = run.request
        decision = self.gate.authorize(
            request.actor,
            env,
            request.operation,
            request.trigger_type,
            reason=request.reason,
            run_id=run.id,
        )
        run.authorization = decision
        if not decision.allowed:
            denied = AuthorizationDenied(request.actor, env.name, decision.policy_reason)
            self.executor.abort(run, RunOutcome.REJECTED, denied.code, str(denied))
            self.store.save_run(run)
            return

        freeze = self.store.get_freeze(env.name)
        if freeze is not None and request.operation not in FREEZE_EXEMPT_OPERATIONS:
            frozen = EnvironmentFrozenError(env.name, freeze.frozen_by, freeze.reason)
            self.executor.abort(run, RunOutcome.REJECTED, frozen.code, str(frozen))
            self.store.save_run(run)
            return

        cuts_release = self._cuts_release(request, env)
        if cuts_release:
            try:
                run.version, run.release_type = self.versions.cut(
                    env.name,
                    request.explicit_version_request,
                    hotfix=request.operation == Operation.HOTFIX
                    and not request.explicit_version_request,
                    create=not request.dry_run,
                    source_revision=request.source_revision,
                    commits=request.commits,
                    run_id=run.id,
                )
            except VersionRegressionError as e:
                self.executor.abort(run, RunOutcome.FAILED, e.code, str(e))
                self.store.save_run(run)
                return
            except ValueError as e:
                self.executor.abort(
                    run, RunOutcome.FAILED, "INVALID_VERSION", sanitize_error_message(str(e))
                )
                self.store.save_run(run)
                return

        self.executor.execute(run, env, cancel=token, on_update=self.store.save_run)
        if cuts_release and not request.dry_run and run.version and run.outcome is not None:
            self.store.record_release_outcome(env.name, run.version, run.outcome, run.id)

    @staticmethod
    def _cuts_release(request: DeploymentRequest, env: EnvironmentConfig) -> bool:
        if request.operation in (Operation.RELEASE, Operation.HOTFIX):
            return True
        return env.tier == Tier.PROD and request.operation == Operation.DEPLOY

    def _authorize_admin(self, env: EnvironmentConfig, actor: str, reason: str | None) -> None:
        decision = self.gate.authorize(
            actor, env, Operation.DEPLOY, TriggerType.MANUAL_DISPATCH, reason=reason
        )
        if not decision.allowed:
            raise AuthorizationDenied(actor, env.name, decision.policy_reason)

    def _track(self, run: PipelineRun, token: CancellationToken) -> None:
        with self._tokens_lock:
            if not run.is_terminal:
                self._tokens[run.id] = token
        self.store.save_run(run)

    def _untrack(self, run: PipelineRun) -> None:
        with self._tokens_lock:
            self._tokens.pop(run.id, None)

    def _publish(self, run: PipelineRun) -> None:
        if not self.notifiers:
            return
        summary = RunSummary.from_run(run)
        for sink in self.notifiers:
            try:
                sink.publish(summary)
            except Exception as e:
                logger.warning(
                    "notification_failed",
                    run_id=run.id,
                    sink=type(sink).__name__,
                    error=sanitize_error_message(str(e)),
                )


__all__ = ["FREEZE_EXEMPT_OPERATIONS", "PipelineController", "commit_messages"]
