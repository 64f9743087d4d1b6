"""Event ingestion command.

Reads a JSON trigger event as produced by a CI system and runs it through
the full control flow::

    {
      "kind": "push",
      "ref": "refs/heads/main",
      "actor": "ci-bot",
      "payload": {"sha": "4f2c1e9", "commits": [{"message": "feat: add search"}]}
    }

Emergency events set ``manual_flags.emergency`` and name the operation in
``payload.operation`` (``hotfix`` or ``rollback``; rollbacks also take
``payload.strategy`` and ``payload.revision``).

Example:
    $ tierflow event event.json
    $ cat event.json | tierflow event - --output json
"""

from __future__ import annotations

import json
from typing import TextIO

import click

from tierflow.cli.deploy import execute_run
from tierflow.cli.output import output_option
from tierflow.cli.utils import ExitCode, build_controller, error_exit


@click.command(name="event", help="Run a JSON trigger event through the pipeline.")
@click.argument("event_file", type=click.File("r"), metavar="FILE")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Validate and plan only; nothing is applied.",
)
@output_option
@click.pass_context
def event_command(
    ctx: click.Context,
    event_file: TextIO,
    dry_run: bool,
    output_format: str,
) -> None:
    """Classify and run an inbound trigger event.

    \b
    FILE: Path of the JSON event, or '-' for stdin.
    """
    try:
        raw = json.load(event_file)
    except json.JSONDecodeError as e:
        error_exit(f"Event is not valid JSON: {e}", ExitCode.MALFORMED_EVENT)
    if not isinstance(raw, dict):
        error_exit("Event must be a JSON object", ExitCode.MALFORMED_EVENT)

    controller = build_controller(ctx)
    execute_run(lambda: controller.handle_event(raw, dry_run=dry_run), output_format)


__all__: list[str] = ["event_command"]
