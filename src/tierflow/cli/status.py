"""Status and history commands.

Example:
    $ tierflow status
    $ tierflow status --env prod --output json
    $ tierflow history --env prod --limit 5
"""

from __future__ import annotations

import click

from tierflow.cli.output import format_history, format_status, output_option
from tierflow.cli.utils import ExitCode, build_controller, error_exit
from tierflow.errors import PipelineError


@click.command(name="status", help="Show the current status record of each environment.")
@click.option("--env", "environment", default=None, help="Single environment.", metavar="ENV")
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json", "yaml"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.pass_context
def status_command(ctx: click.Context, environment: str | None, output_format: str) -> None:
    """Show the outcome of the last completed run per environment.

    In-flight runs never appear here; only terminal outcomes do.
    """
    controller = build_controller(ctx)
    names = controller.config.environment_names
    if environment is not None:
        if environment not in names:
            error_exit(f"Unknown environment '{environment}'", ExitCode.INVALID_ENVIRONMENT)
        names = [environment]
    click.echo(
        format_status(controller.status(), controller.store.all_freezes(), names, output_format)
    )


@click.command(name="history", help="List completed runs, most recent first.")
@click.option("--env", "environment", default=None, help="Single environment.", metavar="ENV")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="Maximum number of runs.",
)
@output_option
@click.pass_context
def history_command(
    ctx: click.Context, environment: str | None, limit: int, output_format: str
) -> None:
    """List terminal runs."""
    controller = build_controller(ctx)
    try:
        runs = controller.history(environment, limit)
    except PipelineError as e:
        error_exit(str(e), e.exit_code)
    click.echo(format_history(runs, output_format))


__all__: list[str] = ["history_command", "status_command"]
