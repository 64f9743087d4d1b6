"""Command-line interface for tierflow.

Commands:
    tierflow deploy / release / hotfix: Start a run
    tierflow rollback: Roll an environment back
    tierflow event: Run a JSON trigger event
    tierflow status / history: Inspect outcomes
    tierflow freeze / unfreeze: Environment deploy freezes

Exit Codes:
    0: Deployed (or dry run passed)
    1: Run failed / general error
    2: Usage or configuration error
    3: No changes detected
    4: Conditions not met
    10-20: Pipeline error codes (see tierflow.errors)
"""

from __future__ import annotations

from tierflow.cli.main import cli, main
from tierflow.cli.utils import ExitCode, error, error_exit, success, warn

__all__: list[str] = [
    # Entry points
    "main",
    "cli",
    # Utilities
    "ExitCode",
    "error",
    "error_exit",
    "warn",
    "success",
]
