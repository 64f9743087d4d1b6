"""Telemetry for tierflow: tracing, trace-correlated logging, sanitization."""

from __future__ import annotations

from tierflow.telemetry.logging import add_trace_context, configure_logging
from tierflow.telemetry.sanitization import sanitize_error_message
from tierflow.telemetry.tracing import (
    create_span,
    current_trace_id,
    get_tracer,
    set_tracer,
    traced,
)

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "current_trace_id",
    "get_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
