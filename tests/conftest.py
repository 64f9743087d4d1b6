"""Shared pytest fixtures for tierflow tests.

Provides in-memory fakes for the external systems a pipeline drives
(provisioning engine, content store, authorization source, notification
sink, validation checks) and factories wiring them into a controller.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Any

import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ALWAYS_ON

from tierflow.interfaces import (
    ApplyResult,
    AuthorizationQueryResult,
    AuthorizationSource,
    CheckContext,
    CheckResult,
    ContentStore,
    NotificationSink,
    PlanResult,
    ProvisioningEngine,
    SyncResult,
    ValidationCheck,
)
from tierflow.pipeline.controller import PipelineController
from tierflow.pipeline.store import InMemoryStateStore
from tierflow.schemas.config import PipelineConfig, RetryConfig
from tierflow.schemas.pipeline import RunSummary

if TYPE_CHECKING:
    from collections.abc import Callable, Generator


class FakeProvisioningEngine(ProvisioningEngine):
    """Scriptable provisioning engine.

    Queued results are consumed first; afterwards the defaults apply. A
    queued exception is raised instead of returned.
    """

    def __init__(self) -> None:
        self.default_apply = ApplyResult(success=True, changed=True)
        self.default_plan = PlanResult(success=True)
        self.apply_results: list[ApplyResult | Exception] = []
        self.plan_results: list[PlanResult | Exception] = []
        self.apply_calls: list[tuple[str, str]] = []
        self.plan_calls: list[tuple[str, str]] = []
        self.apply_delay = 0.0
        self._lock = threading.Lock()

    def apply(self, environment: str, version: str) -> ApplyResult:
        with self._lock:
            self.apply_calls.append((environment, version))
            result = self.apply_results.pop(0) if self.apply_results else self.default_apply
        if self.apply_delay:
            time.sleep(self.apply_delay)
        if isinstance(result, Exception):
            raise result
        return result

    def plan(self, environment: str, version: str) -> PlanResult:
        with self._lock:
            self.plan_calls.append((environment, version))
            result = self.plan_results.pop(0) if self.plan_results else self.default_plan
        if isinstance(result, Exception):
            raise result
        return result


class FakeContentStore(ContentStore):
    """Scriptable content store."""

    def __init__(self) -> None:
        self.default_sync = SyncResult(success=True, changed=True)
        self.sync_results: list[SyncResult | Exception] = []
        self.sync_calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def sync(self, environment: str, version: str) -> SyncResult:
        with self._lock:
            self.sync_calls.append((environment, version))
            result = self.sync_results.pop(0) if self.sync_results else self.default_sync
        if isinstance(result, Exception):
            raise result
        return result


class FakeAuthorizationSource(AuthorizationSource):
    """Authorization source answering from a dict of actor to role."""

    def __init__(self, roles: dict[str, str] | None = None) -> None:
        self.roles = dict(roles or {})
        self.queries: list[tuple[str, str]] = []

    def query(self, actor: str, environment: str) -> AuthorizationQueryResult:
        self.queries.append((actor, environment))
        if actor not in self.roles:
            return AuthorizationQueryResult(allowed=False)
        return AuthorizationQueryResult(allowed=True, role=self.roles[actor])


class RecordingSink(NotificationSink):
    """Notification sink keeping every published summary."""

    def __init__(self) -> None:
        self.summaries: list[RunSummary] = []

    def publish(self, run_summary: RunSummary) -> None:
        self.summaries.append(run_summary)


class FakeCheck(ValidationCheck):
    """Validation check with a fixed result.

    Args:
        name: Check name.
        passed: Result to report.
        detail: Failure detail.
        block: Event the check waits on before answering (up to 5s).
        error: Exception raised instead of answering.
    """

    def __init__(
        self,
        name: str,
        passed: bool = True,
        detail: str | None = None,
        block: threading.Event | None = None,
        error: Exception | None = None,
    ) -> None:
        self.name = name
        self.passed = passed
        self.detail = detail
        self.block = block
        self.error = error
        self.contexts: list[CheckContext] = []
        self.threads: list[str] = []

    def run(self, context: CheckContext) -> CheckResult:
        self.contexts.append(context)
        self.threads.append(threading.current_thread().name)
        if self.block is not None:
            self.block.wait(5.0)
        if self.error is not None:
            raise self.error
        return CheckResult(name=self.name, passed=self.passed, detail=self.detail)


class FakeClock:
    """Monotonic clock advanced by its own sleep function."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Restore the default structlog configuration after each test.

    CLI invocations configure structlog to write to the runner's stderr,
    which is closed once the invocation returns.
    """
    yield
    structlog.reset_defaults()


@pytest.fixture
def anyio_backend() -> str:
    """Run anyio tests on asyncio only."""
    return "asyncio"


@pytest.fixture
def span_exporter() -> Generator[InMemorySpanExporter, None, None]:
    """Route tierflow spans to an in-memory exporter.

    Yields:
        Exporter holding finished spans.
    """
    from tierflow.telemetry.tracing import set_tracer

    exporter = InMemorySpanExporter()
    provider = TracerProvider(sampler=ALWAYS_ON)
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    set_tracer(provider.get_tracer("tierflow-test"))

    yield exporter

    set_tracer(None)
    exporter.clear()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Default dev/staging/prod configuration with alice as owner."""
    return PipelineConfig(
        owners=["alice"],
        retry=RetryConfig(backoff_seconds=0.0, poll_interval_seconds=0.01),
    )


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def provisioning() -> FakeProvisioningEngine:
    return FakeProvisioningEngine()


@pytest.fixture
def content() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fake_check() -> type[FakeCheck]:
    """The FakeCheck class, for building checks inside tests."""
    return FakeCheck


@pytest.fixture
def fake_auth_source() -> type[FakeAuthorizationSource]:
    """The FakeAuthorizationSource class, for building sources inside tests."""
    return FakeAuthorizationSource


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_controller(
    pipeline_config: PipelineConfig,
    provisioning: FakeProvisioningEngine,
    content: FakeContentStore,
    store: InMemoryStateStore,
    sink: RecordingSink,
) -> Callable[..., PipelineController]:
    """Factory building a controller on the shared fakes.

    Keyword arguments override the controller's constructor arguments.
    """

    def _make(**overrides: Any) -> PipelineController:
        kwargs: dict[str, Any] = {
            "store": store,
            "notifiers": [sink],
            "sleep": lambda _seconds: None,
        }
        kwargs.update(overrides)
        config = kwargs.pop("config", pipeline_config)
        return PipelineController(config, provisioning, content, **kwargs)

    return _make


@pytest.fixture
def controller(make_controller: Callable[..., PipelineController]) -> PipelineController:
    """Controller on the shared fakes with default settings."""
    return make_controller()
