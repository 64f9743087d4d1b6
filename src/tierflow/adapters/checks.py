"""Validation checks: shell commands and HTTP health probes."""

from __future__ import annotations

import subprocess

import httpx
import structlog

from tierflow.adapters.command import run_command
from tierflow.interfaces import CheckContext, CheckResult, ValidationCheck
from tierflow.schemas.config import CheckConfig, PipelineConfig
from tierflow.schemas.pipeline import StageName
from tierflow.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)


def _render(template: str, context: CheckContext) -> str:
    return (
        template.replace("{environment}", context.environment)
        .replace("{version}", context.version)
        .replace("{stage}", context.stage.value)
    )


class CommandCheck(ValidationCheck):
    """Passes when the command exits with status 0."""

    def __init__(self, name: str, command: str, timeout_seconds: float = 300.0) -> None:
        self.name = name
        self.command = command
        self.timeout_seconds = timeout_seconds

    def run(self, context: CheckContext) -> CheckResult:
        command = _render(self.command, context)
        try:
            output = run_command(command, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            return CheckResult(
                name=self.name,
                passed=False,
                detail=f"timed out after {self.timeout_seconds:g}s",
            )
        except OSError as e:
            return CheckResult(name=self.name, passed=False, detail=sanitize_error_message(str(e)))
        if output.returncode != 0:
            return CheckResult(name=self.name, passed=False, detail=output.error_text)
        return CheckResult(name=self.name, passed=True)


class HttpCheck(ValidationCheck):
    """Passes when a GET returns the expected status code."""

    def __init__(
        self,
        name: str,
        url: str,
        expected_status: int = 200,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.name = name
        self.url = url
        self.expected_status = expected_status
        self.timeout_seconds = timeout_seconds

    def run(self, context: CheckContext) -> CheckResult:
        url = _render(self.url, context)
        try:
            with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True) as client:
                response = client.get(url)
        except httpx.TimeoutException:
            return CheckResult(name=self.name, passed=False, detail="request timed out")
        except httpx.HTTPError as e:
            return CheckResult(name=self.name, passed=False, detail=sanitize_error_message(str(e)))
        if response.status_code != self.expected_status:
            return CheckResult(
                name=self.name,
                passed=False,
                detail=f"expected HTTP {self.expected_status}, got {response.status_code}",
            )
        return CheckResult(name=self.name, passed=True)


def check_from_config(config: CheckConfig) -> ValidationCheck:
    """Build a check from its configuration."""
    if config.type == "http":
        assert config.url is not None
        return HttpCheck(
            config.name,
            config.url,
            expected_status=config.expected_status,
            timeout_seconds=config.timeout_seconds,
        )
    assert config.command is not None
    return CommandCheck(config.name, config.command, timeout_seconds=config.timeout_seconds)


def build_checks(config: PipelineConfig) -> dict[tuple[StageName, str], list[ValidationCheck]]:
    """Checks per (stage, environment) for every configured environment."""
    checks: dict[tuple[StageName, str], list[ValidationCheck]] = {}
    for environment in config.environment_names:
        for check_config in config.checks:
            if check_config.applies_to(environment):
                checks.setdefault((check_config.stage, environment), []).append(
                    check_from_config(check_config)
                )
    logger.debug("checks_built", count=sum(len(v) for v in checks.values()))
    return checks


__all__ = ["CommandCheck", "HttpCheck", "build_checks", "check_from_config"]
