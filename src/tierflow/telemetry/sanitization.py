"""Sanitize error messages before they are recorded on spans or in run outcomes.

Provisioning and sync commands echo their environment and arguments on
failure, so stage errors routinely carry Terraform variables
(``TF_VAR_db_password=...``), cloud credentials (``AWS_SECRET_ACCESS_KEY``),
CLI flags (``--token abc``), HTTP authorization headers and registry URLs
with embedded credentials. All of these are redacted before a message leaves
the process.
"""

from __future__ import annotations

import re

REDACTED = "<REDACTED>"

# Identifiers naming a credential, e.g. TF_VAR_db_password, GITHUB_TOKEN, --api-key
_SENSITIVE_NAME = (
    r"[\w.-]*?(?:password|passwd|secret|token|api[_-]?key|access[_-]?key|private[_-]?key"
    r"|credentials?|authorization)[\w.-]*"
)
_KEY_VALUE_PATTERN = re.compile(
    rf"(?<![\w.-])({_SENSITIVE_NAME})(\s*[=:]\s*)(?:(?:bearer|basic|token)\s+)?\S+",
    re.IGNORECASE,
)
_FLAG_VALUE_PATTERN = re.compile(
    r"(--[\w-]*(?:password|passwd|secret|token|api-key|access-key|private-key|credentials?)"
    r"[\w-]*)\s+(?!-)\S+",
    re.IGNORECASE,
)
_BEARER_PATTERN = re.compile(r"\b(Bearer)\s+[\w.~+/=-]+", re.IGNORECASE)
_URL_CREDENTIAL_PATTERN = re.compile(r"://[^@/\s]+:[^@/\s]+@")
# AWS access key ids and GitHub tokens
_TOKEN_SHAPE_PATTERN = re.compile(r"\b(?:(?:AKIA|ASIA)[0-9A-Z]{16}|gh[pousr]_[A-Za-z0-9]{20,})\b")


def _redact_pair(match: re.Match[str]) -> str:
    separator = "=" if "=" in match.group(2) else ": "
    return f"{match.group(1)}{separator}{REDACTED}"


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact credentials from an error message and truncate it.

    Args:
        msg: Raw error message.
        max_length: Maximum length of the returned message.

    Returns:
        Sanitized and truncated message.

    Example:
        >>> sanitize_error_message("apply failed: TF_VAR_db_password=hunter2 rejected")
        'apply failed: TF_VAR_db_password=<REDACTED> rejected'
    """
    sanitized = _URL_CREDENTIAL_PATTERN.sub(f"://{REDACTED}@", msg)
    sanitized = _KEY_VALUE_PATTERN.sub(_redact_pair, sanitized)
    sanitized = _FLAG_VALUE_PATTERN.sub(rf"\1 {REDACTED}", sanitized)
    sanitized = _BEARER_PATTERN.sub(rf"\1 {REDACTED}", sanitized)
    sanitized = _TOKEN_SHAPE_PATTERN.sub(REDACTED, sanitized)
    return sanitized[:max_length]


__all__ = ["REDACTED", "sanitize_error_message"]
