"""Subprocess-backed provisioning engine and content store.

Commands are shell templates with ``{environment}`` and ``{version}``
placeholders, for example::

    provisioning:
      apply_command: terraform -chdir=infra/{environment} apply -auto-approve -var version={version}
      plan_command: terraform -chdir=infra/{environment} plan -detailed-exitcode
    content:
      sync_command: aws s3 sync dist/ s3://site-{environment}/ --delete

Change detection:
    - apply: the ``N added, N changed, N destroyed`` summary; ``No changes.``
      means nothing changed; without either, the apply is assumed to change.
    - plan: exit code 0 means converged, exit code 2 means pending changes.
    - sync: any ``upload:``, ``copy:`` or ``delete:`` output line.
"""

from __future__ import annotations

import os
import re
import subprocess
import time
from dataclasses import dataclass

import structlog

from tierflow.errors import ProvisioningError, TransientProvisioningError
from tierflow.interfaces import (
    ApplyResult,
    ContentStore,
    PlanResult,
    ProvisioningEngine,
    SyncResult,
)
from tierflow.schemas.config import CommandContentConfig, CommandProvisioningConfig
from tierflow.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

_SUMMARY_RE = re.compile(
    r"(\d+) to add, (\d+) to change, (\d+) to destroy"
    r"|(\d+) added, (\d+) changed, (\d+) destroyed"
)
_TRANSIENT_RE = re.compile(
    r"(timed? ?out|connection (reset|refused)|rate ?exceeded|throttl|"
    r"temporarily unavailable|service unavailable|error acquiring the state lock)",
    re.IGNORECASE,
)
_SYNC_CHANGE_PREFIXES = ("upload:", "copy:", "delete:")


@dataclass
class CommandOutput:
    """Captured output of a finished command."""

    command: str
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def error_text(self) -> str:
        text = self.stderr.strip() or self.stdout.strip()
        if not text:
            return f"exit code {self.returncode}"
        return sanitize_error_message(f"exit code {self.returncode}: {text}")


def run_command(
    command: str,
    *,
    timeout: float | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> CommandOutput:
    """Run a shell command and capture its output.

    Raises:
        subprocess.TimeoutExpired: If the command exceeds ``timeout``.
        OSError: If the shell cannot be started.
    """
    start_time = time.monotonic()
    full_env = {**os.environ, **env} if env else None
    result = subprocess.run(
        command,
        shell=True,
        capture_output=True,
        text=True,
        timeout=timeout,
        cwd=cwd,
        env=full_env,
    )
    return CommandOutput(
        command=command,
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
        duration_ms=int((time.monotonic() - start_time) * 1000),
    )


def render(template: str, environment: str, version: str) -> str:
    """Substitute placeholders in a command template."""
    return template.replace("{environment}", environment).replace("{version}", version)


def _summary_total(text: str) -> int | None:
    match = None
    for match in _SUMMARY_RE.finditer(text):
        pass
    if match is None:
        return None
    return sum(int(g) for g in match.groups() if g is not None)


class CommandProvisioningEngine(ProvisioningEngine):
    """Provisioning engine running configured shell commands.

    Args:
        config: Command templates and execution settings.
        timeout: Optional hard timeout per command in seconds.
    """

    def __init__(self, config: CommandProvisioningConfig, timeout: float | None = None) -> None:
        self.config = config
        self.timeout = timeout

    def _run(self, operation: str, template: str, environment: str, version: str) -> CommandOutput:
        command = render(template, environment, version)
        log = logger.bind(operation=operation, environment=environment, version=version)
        log.info("provisioning_command_started", command=command)
        try:
            output = run_command(
                command,
                timeout=self.timeout,
                cwd=self.config.working_dir,
                env=self.config.env,
            )
        except subprocess.TimeoutExpired as e:
            raise ProvisioningError(operation, f"command timed out after {e.timeout}s") from e
        except OSError as e:
            raise ProvisioningError(operation, sanitize_error_message(str(e))) from e
        log.info(
            "provisioning_command_finished",
            returncode=output.returncode,
            duration_ms=output.duration_ms,
        )
        return output

    def apply(self, environment: str, version: str) -> ApplyResult:
        output = self._run("apply", self.config.apply_command, environment, version)
        if output.returncode != 0:
            if _TRANSIENT_RE.search(output.stderr) or _TRANSIENT_RE.search(output.stdout):
                raise TransientProvisioningError("apply", output.error_text)
            return ApplyResult(success=False, error=output.error_text)
        if "No changes." in output.stdout:
            return ApplyResult(success=True, changed=False)
        total = _summary_total(output.stdout)
        return ApplyResult(success=True, changed=total is None or total > 0)

    def plan(self, environment: str, version: str) -> PlanResult:
        output = self._run("plan", self.config.plan_command, environment, version)
        if output.returncode == 0:
            return PlanResult(success=True)
        if output.returncode == 2:
            summary = next(
                (m.group(0) for m in _SUMMARY_RE.finditer(output.stdout)),
                "pending changes",
            )
            return PlanResult(success=True, diff_summary=summary)
        if _TRANSIENT_RE.search(output.stderr):
            raise TransientProvisioningError("plan", output.error_text)
        return PlanResult(success=False, error=output.error_text)


class CommandContentStore(ContentStore):
    """Content store running a configured sync command."""

    def __init__(self, config: CommandContentConfig, timeout: float | None = None) -> None:
        self.config = config
        self.timeout = timeout

    def sync(self, environment: str, version: str) -> SyncResult:
        command = render(self.config.sync_command, environment, version)
        log = logger.bind(environment=environment, version=version)
        log.info("content_sync_started", command=command)
        try:
            output = run_command(
                command,
                timeout=self.timeout,
                cwd=self.config.working_dir,
                env=self.config.env,
            )
        except subprocess.TimeoutExpired as e:
            raise ProvisioningError("sync", f"command timed out after {e.timeout}s") from e
        except OSError as e:
            raise ProvisioningError("sync", sanitize_error_message(str(e))) from e

        if output.returncode != 0:
            if _TRANSIENT_RE.search(output.stderr):
                raise TransientProvisioningError("sync", output.error_text)
            return SyncResult(success=False, error=output.error_text)
        changed = any(
            line.strip().startswith(_SYNC_CHANGE_PREFIXES) for line in output.stdout.splitlines()
        )
        log.info("content_sync_finished", changed=changed, duration_ms=output.duration_ms)
        return SyncResult(success=True, changed=changed)


__all__ = [
    "CommandContentStore",
    "CommandOutput",
    "CommandProvisioningEngine",
    "render",
    "run_command",
]
