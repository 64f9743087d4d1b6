"""Main entry point for the tierflow CLI.

Commands:
    tierflow deploy: Deploy to an environment
    tierflow release: Cut and deploy a release
    tierflow hotfix: Cut and deploy a hotfix
    tierflow rollback: Roll an environment back
    tierflow event: Run a JSON trigger event
    tierflow status: Current status per environment
    tierflow history: Completed runs
    tierflow freeze / unfreeze: Environment deploy freezes

Example:
    $ tierflow --config tierflow.yaml deploy --env staging
    $ TIERFLOW_CONFIG=ci/tierflow.yaml tierflow event event.json --output json
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

import click

from tierflow.cli.deploy import deploy_command, hotfix_command, release_command
from tierflow.cli.event import event_command
from tierflow.cli.freeze import freeze_command, unfreeze_command
from tierflow.cli.rollback import rollback_command
from tierflow.cli.status import history_command, status_command
from tierflow.telemetry.logging import configure_logging


def _get_version() -> str:
    """Installed tierflow version, or 'unknown' if not installed."""
    try:
        return get_version("tierflow")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="tierflow",
    help="tierflow - deployment and release pipeline control for tiered environments.",
    epilog="Use 'tierflow <command> --help' for command-specific help.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=_get_version(), prog_name="tierflow", message="%(prog)s %(version)s")
@click.option(
    "--config",
    "config_path",
    envvar="TIERFLOW_CONFIG",
    default="tierflow.yaml",
    show_default=True,
    type=click.Path(dir_okay=False),
    help="Pipeline configuration file.",
)
@click.option(
    "--state-dir",
    envvar="TIERFLOW_STATE_DIR",
    default=None,
    type=click.Path(file_okay=False),
    help="State directory (overrides the configuration).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level (logs go to stderr).",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"], case_sensitive=False),
    default="console",
    show_default=True,
    help="Log format.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str,
    state_dir: str | None,
    log_level: str,
    log_format: str,
) -> None:
    """Root command group for the tierflow CLI."""
    configure_logging(log_level=log_level, json_output=log_format.lower() == "json")
    settings = ctx.ensure_object(dict)
    settings["config_path"] = config_path
    settings["state_dir"] = state_dir


cli.add_command(deploy_command)
cli.add_command(release_command)
cli.add_command(hotfix_command)
cli.add_command(rollback_command)
cli.add_command(event_command)
cli.add_command(status_command)
cli.add_command(history_command)
cli.add_command(freeze_command)
cli.add_command(unfreeze_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the tierflow CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
