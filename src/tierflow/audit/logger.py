"""Audit logger with OpenTelemetry trace context correlation.

Emits one structured ``audit_event`` log entry per authorization decision,
rollback and environment freeze change, on a dedicated logger so that audit
entries can be routed separately from operational logs.

Example:
    >>> audit = get_audit_logger()
    >>> audit.log_authorization(decision)
"""

from __future__ import annotations

from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID

from tierflow.schemas.pipeline import (
    AuthorizationDecision,
    EnvironmentFreeze,
    RollbackRecord,
    RunOutcome,
)

AUDIT_LOGGER_NAME = "tierflow.audit"


def _get_trace_context() -> dict[str, str]:
    """Return trace_id/span_id of the active span, or an empty dict."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id == INVALID_TRACE_ID or ctx.span_id == INVALID_SPAN_ID:
        return {}
    return {
        "trace_id": format(ctx.trace_id, "032x"),
        "span_id": format(ctx.span_id, "016x"),
    }


class AuditLogger:
    """Structured audit logger.

    Allowed and successful actions are logged at INFO, denials at WARNING
    and failed rollbacks at ERROR.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME) -> None:
        self._logger = structlog.get_logger(logger_name)

    @property
    def logger(self) -> Any:
        """The underlying structlog logger."""
        return self._logger

    def _emit(self, level: str, action: str, data: dict[str, Any]) -> None:
        log_data = {**data, **_get_trace_context(), "audit_event": True, "action": action}
        getattr(self._logger, level)("audit_event", **log_data)

    def log_authorization(self, decision: AuthorizationDecision) -> None:
        """Log an authorization decision."""
        self._emit(
            "info" if decision.allowed else "warning",
            "authorization",
            decision.model_dump(mode="json"),
        )

    def log_rollback(self, record: RollbackRecord) -> None:
        """Log a rollback record."""
        if record.outcome == RunOutcome.DEPLOYED:
            level = "info"
        elif record.outcome == RunOutcome.REJECTED:
            level = "warning"
        else:
            level = "error"
        self._emit(level, "rollback", record.model_dump(mode="json"))

    def log_freeze(self, freeze: EnvironmentFreeze, *, frozen: bool, actor: str) -> None:
        """Log an environment freeze or unfreeze."""
        self._emit(
            "info",
            "freeze" if frozen else "unfreeze",
            {**freeze.model_dump(mode="json"), "actor": actor},
        )


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Return the shared audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


__all__ = ["AUDIT_LOGGER_NAME", "AuditLogger", "get_audit_logger"]
