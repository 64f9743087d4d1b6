"""Audit logging for authorization decisions, rollbacks and freezes."""

from __future__ import annotations

from tierflow.audit.logger import AUDIT_LOGGER_NAME, AuditLogger, get_audit_logger

__all__ = ["AUDIT_LOGGER_NAME", "AuditLogger", "get_audit_logger"]
