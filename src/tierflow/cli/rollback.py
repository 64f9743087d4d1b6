"""Rollback command.

Example:
    $ tierflow rollback --env prod --reason "Checkout errors after 1.3.0"
    $ tierflow rollback --env prod --strategy specific_revision --revision v1.1.0 \\
        --reason "Restore known good catalog"
    $ tierflow rollback --env prod --strategy content_only --reason "Bad asset upload"

Exit Codes:
    0  - Rolled back
    1  - Rollback run failed
    11 - Unknown environment
    13 - Authorization denied
    18 - No rollback target
"""

from __future__ import annotations

import click

from tierflow.cli.deploy import execute_run, run_options
from tierflow.cli.output import format_rollback_table
from tierflow.cli.utils import build_controller, info
from tierflow.pipeline.authorization import get_actor_identity
from tierflow.pipeline.controller import PipelineController
from tierflow.schemas.pipeline import PipelineRun, RollbackStrategy


def _rollback_with_record(
    controller: PipelineController,
    environment: str,
    strategy: RollbackStrategy,
    actor: str,
    reason: str,
    revision: str | None,
    dry_run: bool,
    output_format: str,
) -> PipelineRun:
    run = controller.rollback(
        environment, strategy, actor, reason, revision=revision, dry_run=dry_run
    )
    if output_format == "table":
        for record in controller.store.list_rollbacks(environment):
            if record.run_id == run.id:
                info(format_rollback_table(record))
    return run


@click.command(name="rollback", help="Roll an environment back to an earlier release.")
@click.option(
    "--env", "environment", required=True, help="Environment to roll back.", metavar="ENV"
)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in RollbackStrategy]),
    default=RollbackStrategy.LAST_KNOWN_GOOD.value,
    show_default=True,
    help="What to restore and how the target is selected.",
)
@click.option(
    "--revision",
    default=None,
    help="Target version or source revision (specific_revision, optional otherwise).",
    metavar="REF",
)
@click.option("--reason", required=True, help="Justification (minimum length enforced).")
@run_options
@click.pass_context
def rollback_command(
    ctx: click.Context,
    environment: str,
    strategy: str,
    revision: str | None,
    reason: str,
    actor: str | None,
    dry_run: bool,
    output_format: str,
) -> None:
    """Roll an environment back.

    Only releases whose deployment succeeded are eligible targets.
    """
    controller = build_controller(ctx)
    identity = get_actor_identity(actor)
    if output_format == "table":
        info(f"Rolling back {environment} ({strategy}) as {identity}")
    execute_run(
        lambda: _rollback_with_record(
            controller,
            environment,
            RollbackStrategy(strategy),
            identity,
            reason,
            revision,
            dry_run,
            output_format,
        ),
        output_format,
    )


__all__: list[str] = ["rollback_command"]
