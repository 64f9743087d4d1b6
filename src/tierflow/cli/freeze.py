"""Environment freeze commands.

A frozen environment rejects deploys and releases; hotfixes and rollbacks
still run.

Example:
    $ tierflow freeze --env prod --reason "Holiday change freeze"
    $ tierflow unfreeze --env prod
"""

from __future__ import annotations

import click

from tierflow.cli.utils import build_controller, error_exit, success, warn
from tierflow.errors import PipelineError
from tierflow.pipeline.authorization import get_actor_identity


@click.command(name="freeze", help="Freeze an environment for deploys and releases.")
@click.option("--env", "environment", required=True, help="Environment to freeze.", metavar="ENV")
@click.option("--reason", required=True, help="Why the environment is frozen.")
@click.option("--actor", default=None, help="Acting identity.", metavar="IDENTITY")
@click.pass_context
def freeze_command(ctx: click.Context, environment: str, reason: str, actor: str | None) -> None:
    """Freeze an environment."""
    controller = build_controller(ctx)
    try:
        freeze = controller.freeze_environment(environment, get_actor_identity(actor), reason)
    except PipelineError as e:
        error_exit(str(e), e.exit_code)
    success(f"Environment {freeze.environment} frozen by {freeze.frozen_by}: {freeze.reason}")


@click.command(name="unfreeze", help="Lift an environment freeze.")
@click.option("--env", "environment", required=True, help="Environment to unfreeze.", metavar="ENV")
@click.option("--actor", default=None, help="Acting identity.", metavar="IDENTITY")
@click.pass_context
def unfreeze_command(ctx: click.Context, environment: str, actor: str | None) -> None:
    """Lift an environment freeze."""
    controller = build_controller(ctx)
    try:
        freeze = controller.unfreeze_environment(environment, get_actor_identity(actor))
    except PipelineError as e:
        error_exit(str(e), e.exit_code)
    if freeze is None:
        warn("Environment was not frozen", environment=environment)
    else:
        success(f"Environment {environment} unfrozen")


__all__: list[str] = ["freeze_command", "unfreeze_command"]
