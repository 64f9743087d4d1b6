"""CLI utility functions, exit codes and output helpers.

Errors go to stderr as plain text; command results go to stdout so that
``--output json`` stays machine-readable.

Example:
    from tierflow.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("Configuration not found", ExitCode.USAGE_ERROR, path=str(path))
"""

from __future__ import annotations

import sys
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import yaml
from pydantic import ValidationError

from tierflow import errors
from tierflow.schemas.config import PipelineConfig, load_config
from tierflow.schemas.pipeline import PipelineRun, RunOutcome

if TYPE_CHECKING:
    from typing import NoReturn

    from tierflow.pipeline.controller import PipelineController


class ExitCode(IntEnum):
    """Exit codes of tierflow commands.

    Run outcomes map to 0-4 and 20; pipeline errors to their own codes.
    """

    SUCCESS = 0
    """Deployed, or a successful query/dry run."""

    GENERAL_ERROR = 1
    """Failed run or unexpected error."""

    USAGE_ERROR = 2
    """Invalid usage or configuration."""

    NO_CHANGES = 3
    """Run completed without changing anything."""

    CONDITIONS_NOT_MET = 4
    """No state-changing stage ran to completion."""

    MALFORMED_EVENT = errors.MalformedEventError.exit_code
    INVALID_ENVIRONMENT = errors.InvalidEnvironment.exit_code
    VERSION_REGRESSION = errors.VersionRegressionError.exit_code
    AUTHORIZATION_DENIED = errors.AuthorizationDenied.exit_code
    STAGE_TIMEOUT = errors.StageTimeout.exit_code
    VALIDATION_FAILED = errors.StageValidationFailure.exit_code
    PROVISIONING_FAILED = errors.ProvisioningError.exit_code
    LOCK_CONTENTION = errors.LockContentionError.exit_code
    ROLLBACK_TARGET_NOT_FOUND = errors.RollbackTargetNotFound.exit_code
    ENVIRONMENT_FROZEN = errors.EnvironmentFrozenError.exit_code
    CANCELLED = errors.RunCancelledError.exit_code


_ERROR_CLASSES: tuple[type[errors.PipelineError], ...] = (
    errors.MalformedEventError,
    errors.InvalidEnvironment,
    errors.VersionRegressionError,
    errors.AuthorizationDenied,
    errors.StageTimeout,
    errors.StageValidationFailure,
    errors.ProvisioningError,
    errors.LockContentionError,
    errors.RollbackTargetNotFound,
    errors.EnvironmentFrozenError,
    errors.RunCancelledError,
)

CODE_EXIT_CODES: dict[str, int] = {cls.code: cls.exit_code for cls in _ERROR_CLASSES}
"""Outcome code to exit code."""
CODE_EXIT_CODES["INVALID_VERSION"] = ExitCode.USAGE_ERROR


def run_exit_code(run: PipelineRun) -> int:
    """Exit code of a terminal run.

    Failed and rejected runs exit with the code of their outcome code. A dry
    run that neither failed nor was rejected exits 0.
    """
    outcome = run.outcome
    if outcome in (RunOutcome.FAILED, RunOutcome.REJECTED):
        default = (
            ExitCode.AUTHORIZATION_DENIED
            if outcome == RunOutcome.REJECTED
            else ExitCode.GENERAL_ERROR
        )
        return CODE_EXIT_CODES.get(run.outcome_code or "", default)
    if outcome == RunOutcome.CANCELLED:
        return ExitCode.CANCELLED
    if run.request.dry_run or outcome == RunOutcome.DEPLOYED:
        return ExitCode.SUCCESS
    if outcome == RunOutcome.NO_CHANGES_DETECTED:
        return ExitCode.NO_CHANGES
    return ExitCode.CONDITIONS_NOT_MET


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Environment not found", environment="qa")
        # Output: Error: Environment not found (environment=qa)
    """
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    click.echo(
        f"Error: {message} ({context_str})" if context_str else f"Error: {message}", err=True
    )


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always exits with the specified code.
    """
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    click.echo(
        f"Warning: {message} ({context_str})" if context_str else f"Warning: {message}", err=True
    )


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr."""
    click.echo(message, err=True)


def load_pipeline_config(path: Path) -> PipelineConfig:
    """Load the pipeline configuration or exit with a usage error."""
    if not path.exists():
        error_exit("Configuration not found", ExitCode.USAGE_ERROR, path=str(path))
    try:
        return load_config(path)
    except ValidationError as e:
        error_exit(
            f"Invalid configuration: {e.error_count()} validation error(s)\n{e}",
            ExitCode.USAGE_ERROR,
        )
    except (yaml.YAMLError, ValueError) as e:
        error_exit(f"Cannot load configuration: {e}", ExitCode.USAGE_ERROR)


def build_controller(ctx: click.Context) -> PipelineController:
    """Build the controller from the root command's options."""
    from tierflow.pipeline.controller import PipelineController

    settings: dict[str, Any] = ctx.ensure_object(dict)
    config = load_pipeline_config(Path(settings["config_path"]))
    try:
        return PipelineController.from_config(config, state_dir=settings.get("state_dir"))
    except (ValueError, OSError, ValidationError) as e:
        error_exit(f"Cannot initialize pipeline: {e}", ExitCode.USAGE_ERROR)


__all__ = [
    "CODE_EXIT_CODES",
    "ExitCode",
    "build_controller",
    "error",
    "error_exit",
    "info",
    "load_pipeline_config",
    "run_exit_code",
    "success",
    "warn",
]
