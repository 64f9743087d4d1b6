"""Stage executor.

Runs the stage graph of a pipeline run against the provisioning engine and
the content store::

    build-validate -> test-validate -> [infra-apply -> post-infra-validate]
        -> content-deploy -> post-deploy-validate

Execution rules:

- Sibling checks of a validation stage run concurrently and join at a
  barrier before the graph advances.
- Every stage runs under a timeout, capped by the time left on the run
  deadline so that the run timeout dominates.
- Transient provisioning errors get one retry after a backoff. Validation
  failures are never retried.
- Fail-fast: after a failure, every unstarted stage is skipped with reason
  ``upstream_failure``.
- The environment's infra lock is held from infra-apply through
  post-infra-validate, and past a timeout until the timed-out worker
  returns. Validation-only stages never take it.
- Cancellation is honoured at stage boundaries, except between infra-apply
  and post-infra-validate, where it is deferred until the infra window closes.
- A mutating stage whose external system reports no change ends skipped
  with reason ``no_changes``.

Outcome precedence once all stages are terminal:

1. any stage failed -> ``failed``
2. any state-changing stage succeeded -> ``deployed``
3. every considered state-changing stage skipped for no change -> ``no_changes_detected``
4. otherwise -> ``conditions_not_met``
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Collection, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from tierflow.errors import (
    PipelineError,
    ProvisioningError,
    RunCancelledError,
    StageTimeout,
    StageValidationFailure,
    TransientProvisioningError,
)
from tierflow.interfaces import (
    CheckContext,
    CheckResult,
    ContentStore,
    ProvisioningEngine,
    ValidationCheck,
)
from tierflow.pipeline.locks import CancellationToken, EnvironmentLockManager, LockGrant
from tierflow.schemas.config import EnvironmentConfig, RetryConfig
from tierflow.schemas.pipeline import (
    MUTATING_STAGES,
    STAGE_DEPENDENCIES,
    STAGE_ORDER,
    PipelineRun,
    RunOutcome,
    SkipReason,
    StageName,
    StageState,
    StageStatus,
    utc_now,
)
from tierflow.telemetry.sanitization import sanitize_error_message
from tierflow.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientProvisioningError,
    ConnectionError,
    TimeoutError,
)

VALIDATION_STAGES: frozenset[StageName] = frozenset(
    {
        StageName.BUILD_VALIDATE,
        StageName.TEST_VALIDATE,
        StageName.POST_INFRA_VALIDATE,
        StageName.POST_DEPLOY_VALIDATE,
    }
)

INFRA_STAGES: tuple[StageName, ...] = (StageName.INFRA_APPLY, StageName.POST_INFRA_VALIDATE)
CONTENT_STAGES: tuple[StageName, ...] = (StageName.CONTENT_DEPLOY, StageName.POST_DEPLOY_VALIDATE)

CheckRegistry = Mapping[Any, Sequence[ValidationCheck]]
"""Checks keyed by stage (all environments) or (stage, environment)."""


@dataclass
class _StageResult:
    changed: bool = False
    skip_reason: SkipReason | None = None
    detail: str | None = None


class _Attempts:
    def __init__(self) -> None:
        self.count = 0


def initialize_stages(run: PipelineRun) -> None:
    """Create pending stage states for a run that has none."""
    if not run.stage_states:
        run.stage_states = [
            StageState(name=name, depends_on=STAGE_DEPENDENCIES[name]) for name in STAGE_ORDER
        ]


def compute_outcome(states: Sequence[StageState]) -> RunOutcome:
    """Apply the outcome precedence to terminal stage states.

    Examples:
        >>> compute_outcome([StageState(name=StageName.INFRA_APPLY, status="failed")])
        <RunOutcome.FAILED: 'failed'>
    """
    if any(s.status == StageStatus.FAILED for s in states):
        return RunOutcome.FAILED
    considered = [
        s for s in states if s.name in MUTATING_STAGES and s.skip_reason != SkipReason.NOT_SELECTED
    ]
    if any(s.status == StageStatus.SUCCESS for s in considered):
        return RunOutcome.DEPLOYED
    if considered and all(
        s.status == StageStatus.SKIPPED and s.skip_reason == SkipReason.NO_CHANGES
        for s in considered
    ):
        return RunOutcome.NO_CHANGES_DETECTED
    return RunOutcome.CONDITIONS_NOT_MET


class StageExecutor:
    """Executes pipeline runs stage by stage.

    Args:
        provisioning: Provisioning engine for infra stages.
        content: Content store for content-deploy.
        locks: Per-environment infra lock manager.
        checks: Validation checks keyed by stage or (stage, environment).
        retry: Retry and convergence polling settings.
        sleep: Sleep function (injectable for tests).
        monotonic: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        provisioning: ProvisioningEngine,
        content: ContentStore,
        locks: EnvironmentLockManager,
        *,
        checks: CheckRegistry | None = None,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provisioning = provisioning
        self.content = content
        self.locks = locks
        self.checks: CheckRegistry = checks or {}
        self.retry = retry or RetryConfig()
        self._sleep = sleep
        self._monotonic = monotonic

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        run: PipelineRun,
        environment: EnvironmentConfig,
        *,
        stages: Collection[StageName] | None = None,
        cancel: CancellationToken | None = None,
        on_update: Callable[[PipelineRun], None] | None = None,
    ) -> PipelineRun:
        """Run the stage graph and set the run's terminal outcome.

        Args:
            run: A non-terminal run.
            environment: The run's resolved environment.
            stages: Stages to execute; others end ``skipped(not_selected)``.
            cancel: Cancellation token checked at safe boundaries.
            on_update: Called after every stage state change.

        Returns:
            The same run, now terminal.

        Raises:
            ValueError: If the run is already terminal.
        """
        if run.is_terminal:
            raise ValueError(f"Run {run.id} is already terminal")
        initialize_stages(run)
        notify = on_update or (lambda _run: None)
        limits = environment.resource_limits
        deadline = self._monotonic() + limits.run_timeout_seconds
        version = self.version_label(run)
        selected = set(stages) if stages is not None else set(STAGE_ORDER)
        log = logger.bind(
            run_id=run.id,
            environment=environment.name,
            version=version,
            dry_run=run.request.dry_run,
        )

        for state in run.stage_states:
            if state.name not in selected:
                state.skip(SkipReason.NOT_SELECTED)
        notify(run)

        needs_lock = StageName.INFRA_APPLY in selected and not run.request.dry_run
        grant: LockGrant | None = None
        running: list[Future[_StageResult]] = []
        failed = False
        cancelled: RunCancelledError | None = None
        try:
            for name in STAGE_ORDER:
                state = run.stage(name)
                if state.is_terminal:
                    if name == StageName.POST_INFRA_VALIDATE and grant is not None:
                        self._release_lock(grant, running)
                        grant = None
                    continue

                if failed:
                    state.skip(SkipReason.UPSTREAM_FAILURE)
                elif cancelled is not None or (
                    cancel is not None and cancel.is_cancelled and grant is None
                ):
                    if cancelled is None:
                        cancelled = RunCancelledError(run.id, name.value)
                    state.skip(SkipReason.CANCELLED, cancel.reason if cancel else None)
                else:
                    if name == StageName.INFRA_APPLY and needs_lock:
                        grant = self._acquire_lock(run, environment, state, deadline)
                        if grant is None:
                            failed = True
                            notify(run)
                            continue
                    self._run_stage(
                        run, state, environment, version, deadline, log, notify, running
                    )
                    failed = state.status == StageStatus.FAILED

                if name == StageName.POST_INFRA_VALIDATE and grant is not None:
                    self._release_lock(grant, running)
                    grant = None
                notify(run)
        finally:
            if grant is not None:
                self._release_lock(grant, running)

        if cancelled is not None:
            reason = str(cancelled)
            if cancel is not None and cancel.reason:
                reason = f"{reason}: {cancel.reason}"
            self._finish(run, RunOutcome.CANCELLED, cancelled.code, reason)
        else:
            outcome = compute_outcome(run.stage_states)
            code, reason = self._describe(run, outcome)
            self._finish(run, outcome, code, reason)
        log.info(
            "run_finished",
            outcome=run.outcome.value if run.outcome else None,
            outcome_code=run.outcome_code,
        )
        notify(run)
        return run

    def abort(self, run: PipelineRun, outcome: RunOutcome, code: str, reason: str) -> PipelineRun:
        """Terminate a run before any stage starts.

        Every stage ends ``skipped(aborted)``; no stage is executed.
        """
        if run.is_terminal:
            raise ValueError(f"Run {run.id} is already terminal")
        initialize_stages(run)
        for state in run.stage_states:
            if not state.is_terminal:
                state.skip(SkipReason.ABORTED, reason)
        self._finish(run, outcome, code, reason)
        logger.info(
            "run_aborted",
            run_id=run.id,
            environment=run.resolved_environment,
            outcome=outcome.value,
            outcome_code=code,
        )
        return run

    def abort_on_error(self, run: PipelineRun, exc: Exception) -> PipelineRun:
        """Terminate a run interrupted by an unexpected error.

        The run ends ``failed`` with the error's code when it is a
        PipelineError and ``INTERNAL_ERROR`` otherwise.
        """
        code = exc.code if isinstance(exc, PipelineError) else "INTERNAL_ERROR"
        reason = sanitize_error_message(f"{type(exc).__name__}: {exc}")
        logger.error(
            "run_internal_error",
            run_id=run.id,
            environment=run.resolved_environment,
            error_type=type(exc).__name__,
            error=reason,
        )
        return self.abort(run, RunOutcome.FAILED, code, reason)

    @staticmethod
    def version_label(run: PipelineRun) -> str:
        """Version passed to the external systems for a run."""
        return (
            run.version
            or run.request.source_revision
            or run.request.source_ref
            or "unversioned"
        )

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _acquire_lock(
        self,
        run: PipelineRun,
        environment: EnvironmentConfig,
        state: StageState,
        deadline: float,
    ) -> LockGrant | None:
        timeout = min(
            environment.resource_limits.lock_queue_timeout_seconds,
            max(deadline - self._monotonic(), 0.0),
        )
        try:
            return self.locks.acquire(environment.name, run.id, timeout)
        except PipelineError as e:
            state.status = StageStatus.FAILED
            state.error = str(e)
            state.error_code = e.code
            state.completed_at = utc_now()
            return None

    def _release_lock(self, grant: LockGrant, running: list[Future[_StageResult]]) -> None:
        """Release the infra lock once no timed-out stage work is still running.

        A stage that timed out is already failed, but its worker thread cannot
        be stopped. The lock stays held until every such worker returns, so the
        next run never mutates the environment alongside it.
        """
        pending = [future for future in running if not future.done()]
        if not pending:
            self.locks.release(grant)
            return

        logger.warning(
            "lock_release_deferred",
            environment=grant.environment,
            run_id=grant.run_id,
            running_stages=len(pending),
        )
        remaining = [len(pending)]
        guard = threading.Lock()

        def _on_done(_future: Future[_StageResult]) -> None:
            with guard:
                remaining[0] -= 1
                last = remaining[0] == 0
            if last:
                self.locks.release(grant)

        for future in pending:
            future.add_done_callback(_on_done)

    def _stage_timeout(self, name: StageName, environment: EnvironmentConfig) -> float:
        limits = environment.resource_limits
        if name == StageName.INFRA_APPLY:
            return limits.infra_timeout_seconds
        if name == StageName.CONTENT_DEPLOY:
            return limits.content_timeout_seconds
        if name == StageName.POST_INFRA_VALIDATE:
            return limits.validation_timeout_seconds + limits.convergence_timeout_seconds
        return limits.validation_timeout_seconds

    def _run_stage(
        self,
        run: PipelineRun,
        state: StageState,
        environment: EnvironmentConfig,
        version: str,
        deadline: float,
        log: Any,
        notify: Callable[[PipelineRun], None],
        running: list[Future[_StageResult]],
    ) -> None:
        name = state.name
        remaining = deadline - self._monotonic()
        stage_timeout = self._stage_timeout(name, environment)
        state.status = StageStatus.RUNNING
        state.started_at = utc_now()
        notify(run)

        attempts = _Attempts()
        with create_span(
            f"tierflow.stage.{name.value}",
            attributes={
                "tierflow.run_id": run.id,
                "tierflow.environment": environment.name,
                "tierflow.stage": name.value,
                "tierflow.timeout_seconds": stage_timeout,
            },
        ) as span:
            log.info("stage_started", stage=name.value, timeout_seconds=stage_timeout)
            try:
                if remaining <= 0:
                    attempts.count = 1
                    raise StageTimeout("run", environment.resource_limits.run_timeout_seconds)
                timeout = min(stage_timeout, remaining)
                work = self._stage_work(run, name, environment, version, attempts, timeout)
                result = self._call_with_timeout(
                    work, timeout, name, stage_timeout, remaining, running
                )
            except PipelineError as e:
                self._fail(state, str(e), e.code, attempts)
                span.set_attribute("tierflow.stage.status", StageStatus.FAILED.value)
                log.warning(
                    "stage_failed",
                    stage=name.value,
                    error_code=e.code,
                    error=state.error,
                    attempts=state.attempts,
                )
                return
            except Exception as e:
                self._fail(state, str(e), "STAGE_ERROR", attempts)
                span.set_attribute("tierflow.stage.status", StageStatus.FAILED.value)
                log.error(
                    "stage_error",
                    stage=name.value,
                    error_type=type(e).__name__,
                    error=state.error,
                )
                return

            state.attempts = max(attempts.count, 1)
            state.changed = result.changed
            if result.skip_reason is not None:
                state.skip(result.skip_reason, result.detail)
            else:
                state.status = StageStatus.SUCCESS
                state.detail = result.detail
                state.completed_at = utc_now()
            span.set_attribute("tierflow.stage.status", state.status.value)
            span.set_attribute("tierflow.stage.changed", state.changed)
            log.info(
                "stage_completed",
                stage=name.value,
                status=state.status.value,
                skip_reason=state.skip_reason.value if state.skip_reason else None,
                changed=state.changed,
                attempts=state.attempts,
            )

    @staticmethod
    def _fail(state: StageState, error: str, code: str, attempts: _Attempts) -> None:
        state.status = StageStatus.FAILED
        state.error = sanitize_error_message(error)
        state.error_code = code
        state.attempts = max(attempts.count, 1)
        state.completed_at = utc_now()

    def _call_with_timeout(
        self,
        work: Callable[[], _StageResult],
        timeout: float,
        name: StageName,
        stage_timeout: float,
        remaining: float,
        running: list[Future[_StageResult]],
    ) -> _StageResult:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tierflow-{name.value}")
        try:
            future = pool.submit(work)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError as e:
                running.append(future)
                if remaining < stage_timeout:
                    raise StageTimeout("run", remaining) from e
                raise StageTimeout(name.value, stage_timeout) from e
        finally:
            pool.shutdown(wait=False)

    def _stage_work(
        self,
        run: PipelineRun,
        name: StageName,
        environment: EnvironmentConfig,
        version: str,
        attempts: _Attempts,
        timeout: float,
    ) -> Callable[[], _StageResult]:
        env_name = environment.name
        dry_run = run.request.dry_run

        if name == StageName.INFRA_APPLY:
            if dry_run:
                return lambda: self._plan_only(env_name, version, attempts)
            return lambda: self._apply(env_name, version, attempts)
        if name == StageName.CONTENT_DEPLOY:
            if dry_run:

                def _skip_content() -> _StageResult:
                    attempts.count = 1
                    return _StageResult(
                        skip_reason=SkipReason.DRY_RUN, detail="content sync skipped"
                    )

                return _skip_content
            return lambda: self._sync(env_name, version, attempts)
        if name == StageName.POST_INFRA_VALIDATE:
            infra_ran = run.stage(StageName.INFRA_APPLY).attempts > 0 and not dry_run

            def _post_infra() -> _StageResult:
                attempts.count = 1
                if infra_ran:
                    self._wait_for_convergence(environment, version, timeout)
                return self._run_checks(name, environment, version, timeout)

            return _post_infra

        def _validate() -> _StageResult:
            attempts.count = 1
            return self._run_checks(name, environment, version, timeout)

        return _validate

    def _with_retry(self, operation: str, attempts: _Attempts, fn: Callable[[], T]) -> T:
        """Call ``fn``, retrying once after a backoff on a transient error."""
        max_attempts = 1 + self.retry.transient_retries
        for attempt in range(1, max_attempts + 1):
            attempts.count = attempt
            try:
                return fn()
            except TRANSIENT_ERRORS as e:
                if attempt >= max_attempts:
                    raise ProvisioningError(
                        operation, sanitize_error_message(str(e)), transient=True
                    ) from e
                delay = self.retry.backoff_seconds * attempt
                logger.warning(
                    "transient_error_retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    backoff_seconds=delay,
                    error=sanitize_error_message(str(e)),
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _apply(self, environment: str, version: str, attempts: _Attempts) -> _StageResult:
        result = self._with_retry(
            "apply", attempts, lambda: self.provisioning.apply(environment, version)
        )
        if not result.success:
            raise ProvisioningError("apply", result.error or "apply reported failure")
        if not result.changed:
            return _StageResult(
                skip_reason=SkipReason.NO_CHANGES, detail="infrastructure up to date"
            )
        return _StageResult(changed=True)

    def _plan_only(self, environment: str, version: str, attempts: _Attempts) -> _StageResult:
        plan = self._with_retry(
            "plan", attempts, lambda: self.provisioning.plan(environment, version)
        )
        if not plan.success:
            raise ProvisioningError("plan", plan.error or "plan reported failure")
        if not plan.has_changes:
            return _StageResult(skip_reason=SkipReason.NO_CHANGES, detail="plan is empty")
        return _StageResult(skip_reason=SkipReason.DRY_RUN, detail=plan.diff_summary)

    def _sync(self, environment: str, version: str, attempts: _Attempts) -> _StageResult:
        result = self._with_retry("sync", attempts, lambda: self.content.sync(environment, version))
        if not result.success:
            raise ProvisioningError("sync", result.error or "sync reported failure")
        if not result.changed:
            return _StageResult(skip_reason=SkipReason.NO_CHANGES, detail="content up to date")
        return _StageResult(changed=True)

    def _wait_for_convergence(
        self, environment: EnvironmentConfig, version: str, timeout: float
    ) -> None:
        """Poll plan() with backoff until it reports no pending changes.

        Raises:
            StageTimeout: If convergence is not reached within the bound.
            ProvisioningError: If planning fails.
        """
        bound = min(environment.resource_limits.convergence_timeout_seconds, timeout)
        poll_deadline = self._monotonic() + bound
        interval = self.retry.poll_interval_seconds
        polls = 0
        while True:
            polls += 1
            try:
                plan = self.provisioning.plan(environment.name, version)
            except TRANSIENT_ERRORS as e:
                logger.warning(
                    "convergence_poll_error",
                    environment=environment.name,
                    poll=polls,
                    error=sanitize_error_message(str(e)),
                )
            else:
                if not plan.success:
                    raise ProvisioningError("plan", plan.error or "plan reported failure")
                if not plan.has_changes:
                    logger.debug("converged", environment=environment.name, polls=polls)
                    return
            if self._monotonic() + interval > poll_deadline:
                raise StageTimeout(StageName.POST_INFRA_VALIDATE.value, bound)
            self._sleep(interval)
            interval = min(
                interval * self.retry.poll_backoff_multiplier,
                self.retry.poll_max_interval_seconds,
            )

    def checks_for(self, stage: StageName, environment: str) -> list[ValidationCheck]:
        """Checks registered for a stage in an environment."""
        return [*self.checks.get(stage, ()), *self.checks.get((stage, environment), ())]

    def _run_checks(
        self,
        stage: StageName,
        environment: EnvironmentConfig,
        version: str,
        timeout: float,
    ) -> _StageResult:
        """Fan checks out to workers and join them at a barrier.

        Raises:
            StageValidationFailure: If any check fails.
            StageTimeout: If the checks do not finish in time.
        """
        checks = self.checks_for(stage, environment.name)
        if not checks:
            return _StageResult(detail="no checks configured")
        context = CheckContext(environment=environment.name, version=version, stage=stage)
        workers = min(environment.resource_limits.max_validation_workers, len(checks))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tierflow-check")
        try:
            futures = {pool.submit(check.run, context): check for check in checks}
            _, not_done = wait(futures, timeout=timeout)
            if not_done:
                raise StageTimeout(stage.value, timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        results: list[CheckResult] = []
        for future, check in futures.items():
            if not future.done():
                results.append(CheckResult(name=check.name, passed=False, detail="did not finish"))
                continue
            error = future.exception()
            if error is not None:
                results.append(
                    CheckResult(
                        name=check.name,
                        passed=False,
                        detail=sanitize_error_message(f"{type(error).__name__}: {error}"),
                    )
                )
            else:
                results.append(future.result())

        failures = [r for r in results if not r.passed]
        if failures:
            details = "; ".join(f"{r.name}: {r.detail}" for r in failures if r.detail)
            raise StageValidationFailure(stage.value, [r.name for r in failures], details or None)
        return _StageResult(detail=f"{len(results)} check(s) passed")

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    @staticmethod
    def _describe(run: PipelineRun, outcome: RunOutcome) -> tuple[str, str]:
        if outcome == RunOutcome.FAILED:
            failed = next(s for s in run.stage_states if s.status == StageStatus.FAILED)
            return (
                failed.error_code or "STAGE_FAILED",
                f"{failed.name.value}: {failed.error or 'failed'}",
            )
        if outcome == RunOutcome.DEPLOYED:
            changed = [s.name.value for s in run.stage_states if s.changed]
            return "DEPLOYED", f"changes applied by {', '.join(changed)}"
        if outcome == RunOutcome.NO_CHANGES_DETECTED:
            return "NO_CHANGES_DETECTED", "no stage changed external state"
        return "CONDITIONS_NOT_MET", "no state-changing stage ran to completion"

    @staticmethod
    def _finish(run: PipelineRun, outcome: RunOutcome, code: str, reason: str) -> None:
        run.outcome_code = code
        run.outcome_reason = reason
        run.completed_at = utc_now()
        run.outcome = outcome


__all__ = [
    "CONTENT_STAGES",
    "INFRA_STAGES",
    "StageExecutor",
    "TRANSIENT_ERRORS",
    "VALIDATION_STAGES",
    "compute_outcome",
    "initialize_stages",
]
