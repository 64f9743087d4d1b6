"""Deploy, release and hotfix commands.

Example:
    $ tierflow deploy --env staging --revision 4f2c1e9
    $ tierflow release --env prod --version-type minor --commit "feat: add search"
    $ tierflow hotfix --env prod --reason "Fix checkout outage" --emergency

Exit Codes:
    0  - Deployed (or a dry run that did not fail)
    1  - Run failed
    3  - No changes detected
    4  - Conditions not met
    12 - Version regression
    13 - Authorization denied
    19 - Environment frozen
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import click
import structlog

from tierflow.cli.output import emit_run, output_option
from tierflow.cli.utils import build_controller, error_exit, info
from tierflow.errors import PipelineError
from tierflow.pipeline.authorization import get_actor_identity
from tierflow.schemas.pipeline import PipelineRun, VersionBump

logger = structlog.get_logger(__name__)

F = Callable[..., Any]


def run_options(fn: F) -> F:
    """Options shared by every command that starts a run."""
    fn = click.option(
        "--actor",
        default=None,
        help="Acting identity. Defaults to $TIERFLOW_ACTOR, then $USER.",
        metavar="IDENTITY",
    )(fn)
    fn = click.option(
        "--dry-run",
        is_flag=True,
        default=False,
        help="Validate and plan only; nothing is applied.",
    )(fn)
    fn = output_option(fn)
    return fn


def source_options(fn: F) -> F:
    """Source ref and revision options."""
    fn = click.option("--ref", default="", help="Source git ref.", metavar="REF")(fn)
    fn = click.option(
        "--revision",
        default=None,
        help="Commit or content revision being deployed.",
        metavar="SHA",
    )(fn)
    return fn


def execute_run(start: Callable[[], PipelineRun], output_format: str) -> None:
    """Start a run, print it and exit with its exit code.

    Pipeline errors raised before the run exists exit with their own code.
    """
    try:
        run = start()
    except PipelineError as e:
        logger.warning("run_not_started", error_code=e.code)
        error_exit(str(e), e.exit_code)
    emit_run(run, output_format)


@click.command(name="deploy", help="Deploy the current revision to an environment.")
@click.option("--env", "environment", required=True, help="Target environment.", metavar="ENV")
@click.option("--reason", default=None, help="Justification recorded with the run.")
@source_options
@run_options
@click.pass_context
def deploy_command(
    ctx: click.Context,
    environment: str,
    reason: str | None,
    ref: str,
    revision: str | None,
    actor: str | None,
    dry_run: bool,
    output_format: str,
) -> None:
    """Deploy to an environment through the full stage graph."""
    controller = build_controller(ctx)
    identity = get_actor_identity(actor)
    if output_format == "table":
        info(f"Deploying to {environment} as {identity}")
    execute_run(
        lambda: controller.deploy(
            environment,
            identity,
            ref=ref,
            source_revision=revision,
            reason=reason,
            dry_run=dry_run,
        ),
        output_format,
    )


@click.command(name="release", help="Cut a release version and deploy it.")
@click.option("--env", "environment", required=True, help="Target environment.", metavar="ENV")
@click.option(
    "--version-type",
    type=click.Choice([b.value for b in VersionBump]),
    default=None,
    help="Version increment. Defaults to patch.",
)
@click.option(
    "--version",
    "target_version",
    default=None,
    help="Explicit version (must exceed the latest release).",
    metavar="X.Y.Z",
)
@click.option(
    "--commit",
    "commits",
    multiple=True,
    help="Commit subject for the release notes (repeatable).",
    metavar="MESSAGE",
)
@click.option("--reason", default=None, help="Justification recorded with the run.")
@source_options
@run_options
@click.pass_context
def release_command(
    ctx: click.Context,
    environment: str,
    version_type: str | None,
    target_version: str | None,
    commits: tuple[str, ...],
    reason: str | None,
    ref: str,
    revision: str | None,
    actor: str | None,
    dry_run: bool,
    output_format: str,
) -> None:
    """Cut and deploy a release."""
    if version_type and target_version:
        raise click.UsageError("--version-type and --version are mutually exclusive")
    controller = build_controller(ctx)
    identity = get_actor_identity(actor)
    if output_format == "table":
        info(f"Releasing to {environment} as {identity}")
    execute_run(
        lambda: controller.release(
            environment,
            identity,
            target_version or version_type,
            ref=ref,
            source_revision=revision,
            commits=commits,
            reason=reason,
            dry_run=dry_run,
        ),
        output_format,
    )


@click.command(name="hotfix", help="Cut a hotfix release and deploy it.")
@click.option("--env", "environment", required=True, help="Target environment.", metavar="ENV")
@click.option("--reason", required=True, help="Justification (minimum length enforced).")
@click.option(
    "--emergency",
    is_flag=True,
    default=False,
    help="Mark the run as an emergency (owner approval applies).",
)
@click.option(
    "--commit",
    "commits",
    multiple=True,
    help="Commit subject for the release notes (repeatable).",
    metavar="MESSAGE",
)
@source_options
@run_options
@click.pass_context
def hotfix_command(
    ctx: click.Context,
    environment: str,
    reason: str,
    emergency: bool,
    commits: tuple[str, ...],
    ref: str,
    revision: str | None,
    actor: str | None,
    dry_run: bool,
    output_format: str,
) -> None:
    """Cut and deploy a hotfix release."""
    controller = build_controller(ctx)
    identity = get_actor_identity(actor)
    if output_format == "table":
        info(f"Hotfixing {environment} as {identity}")
    execute_run(
        lambda: controller.hotfix(
            environment,
            identity,
            reason,
            ref=ref,
            source_revision=revision,
            commits=commits,
            emergency=emergency,
            dry_run=dry_run,
        ),
        output_format,
    )


__all__: list[str] = [
    "deploy_command",
    "execute_run",
    "hotfix_command",
    "release_command",
    "run_options",
    "source_options",
]
