"""OpenTelemetry tracing utilities for tierflow.

This module provides the ``@traced`` decorator and the ``create_span()``
context manager used to instrument runs, stages, rollbacks and
authorization decisions. Exceptions escaping a span mark it as errored with
a sanitized message.
"""

from __future__ import annotations

import asyncio
import functools
import threading
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry import trace
from opentelemetry.trace import INVALID_TRACE_ID, Status, StatusCode, Tracer

from tierflow.telemetry.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "tierflow"

_tracer: Tracer | None = None
_tracer_lock = threading.Lock()


def get_tracer() -> Tracer:
    """Get the tracer used for tierflow spans.

    The tracer is taken from the global tracer provider on first use and
    cached. Executor worker threads share it, so creation is locked.
    """
    global _tracer

    tracer = _tracer
    if tracer is not None:
        return tracer
    with _tracer_lock:
        if _tracer is None:
            _tracer = trace.get_tracer(_TRACER_NAME)
        return _tracer


def set_tracer(tracer: Tracer | None) -> None:
    """Override the tierflow tracer (for testing).

    Args:
        tracer: Tracer instance to use, or None to fall back to the global
            provider on next use.
    """
    global _tracer

    with _tracer_lock:
        _tracer = tracer


def _record_error(span: Span, exc: Exception) -> None:
    sanitized = sanitize_error_message(str(exc))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(exc).__name__)
    span.set_attribute("exception.message", sanitized)


def _set_attributes(span: Span, attributes: dict[str, Any] | None) -> None:
    if not attributes:
        return
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator to trace function execution with an OpenTelemetry span.

    Can be used with or without arguments:
        @traced
        def my_function(): ...

        @traced(name="tierflow.version.cut", attributes={"tierflow.component": "versions"})
        def my_function(): ...

    Args:
        func: The function to decorate (when used without parentheses).
        name: Span name. Defaults to the function name.
        attributes: Static attributes set on every invocation.

    Returns:
        Decorated function that creates a span on each invocation.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        if asyncio.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
                with get_tracer().start_as_current_span(
                    span_name,
                    record_exception=False,
                    set_status_on_exception=False,
                ) as span:
                    _set_attributes(span, attributes)
                    try:
                        return await fn(*args, **kwargs)
                    except Exception as e:
                        _record_error(span, e)
                        raise

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with get_tracer().start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                _set_attributes(span, attributes)
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically. Attributes
    whose value is None are not set.

    Args:
        name: The name for the span.
        attributes: Optional attributes to set on the span.

    Yields:
        The created span for additional attribute setting.

    Examples:
        >>> with create_span("tierflow.pipeline.run", {"tierflow.environment": "dev"}) as span:
        ...     span.set_attribute("tierflow.outcome", "deployed")
    """
    with get_tracer().start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        _set_attributes(span, attributes)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise


def current_trace_id() -> str | None:
    """Return the active trace id as 32-char hex, or None outside a valid span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id == INVALID_TRACE_ID:
        return None
    return format(ctx.trace_id, "032x")


__all__ = [
    "create_span",
    "current_trace_id",
    "get_tracer",
    "set_tracer",
    "traced",
]
