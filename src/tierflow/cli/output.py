"""Output formatting shared by tierflow commands."""

from __future__ import annotations

import json
import sys
from collections.abc import Sequence
from datetime import datetime

import click
import yaml

from tierflow.cli.utils import info, run_exit_code
from tierflow.schemas.pipeline import (
    EnvironmentFreeze,
    EnvironmentStatus,
    PipelineRun,
    RollbackRecord,
    RunSummary,
)

OUTPUT_FORMATS = ("table", "json")

output_option = click.option(
    "--output",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS, case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)


def _time(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def format_run_table(run: PipelineRun) -> str:
    """Human-readable run report."""
    lines = [
        "",
        f"Run:          {run.id}",
        f"Environment:  {run.resolved_environment}",
        f"Trigger:      {run.request.trigger_type.value}",
        f"Operation:    {run.request.operation.value}",
        f"Actor:        {run.request.actor}",
        f"Version:      {run.version or '-'}",
        f"Outcome:      {run.outcome.value if run.outcome else 'in progress'}",
        f"Code:         {run.outcome_code or '-'}",
        f"Reason:       {run.outcome_reason or '-'}",
    ]
    if run.request.dry_run:
        lines.append("Dry run:      yes")
    if run.trace_id:
        lines.append(f"Trace ID:     {run.trace_id}")
    lines.extend(["", "Stages:"])
    for state in run.stage_states:
        label = state.status.value
        if state.skip_reason is not None:
            label = f"{label} ({state.skip_reason.value})"
        lines.append(f"  {state.name.value:<22} {label}")
        if state.error:
            lines.append(f"  {'':<22} {state.error}")
        elif state.detail and state.skip_reason is not None:
            lines.append(f"  {'':<22} {state.detail}")
    lines.append("")
    return "\n".join(lines)


def emit_run(run: PipelineRun, output_format: str) -> None:
    """Print a terminal run and exit with its exit code."""
    if output_format == "json":
        click.echo(RunSummary.from_run(run).model_dump_json(indent=2))
    else:
        click.echo(format_run_table(run))
        info(f"Run {run.id} finished: {run.outcome.value if run.outcome else 'unknown'}")
    sys.exit(run_exit_code(run))


def format_rollback_table(record: RollbackRecord) -> str:
    """Human-readable rollback record."""
    lines = [
        "",
        f"Rollback ID:      {record.rollback_id}",
        f"Environment:      {record.environment}",
        f"Strategy:         {record.strategy.value}",
        f"Target Version:   {record.target_version or '-'}",
        f"Previous Version: {record.previous_version or '-'}",
        f"Version Tag:      {record.version_tag or '-'}",
        f"Initiated By:     {record.initiated_by}",
        f"Reason:           {record.reason or '-'}",
        f"Outcome:          {record.outcome.value}",
        "",
    ]
    return "\n".join(lines)


def format_status(
    statuses: dict[str, EnvironmentStatus],
    freezes: dict[str, EnvironmentFreeze],
    environments: Sequence[str],
    output_format: str,
) -> str:
    """Current status of every environment."""
    if output_format in ("json", "yaml"):
        data = {
            name: {
                "status": statuses[name].model_dump(mode="json") if name in statuses else None,
                "freeze": freezes[name].model_dump(mode="json") if name in freezes else None,
            }
            for name in environments
        }
        if output_format == "yaml":
            return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        return json.dumps(data, indent=2)

    lines = ["", f"{'ENVIRONMENT':<14} {'OUTCOME':<22} {'VERSION':<24} {'UPDATED':<27} RUN"]
    for name in environments:
        status = statuses.get(name)
        if status is None:
            lines.append(f"{name:<14} {'-':<22} {'-':<24} {'-':<27} -")
        else:
            lines.append(
                f"{name:<14} {status.outcome.value:<22} {status.version or '-':<24} "
                f"{_time(status.timestamp):<27} {status.triggering_run_id}"
            )
        freeze = freezes.get(name)
        if freeze is not None:
            lines.append(f"{'':<14} frozen by {freeze.frozen_by}: {freeze.reason}")
    lines.append("")
    return "\n".join(lines)


def format_history(runs: Sequence[PipelineRun], output_format: str) -> str:
    """Terminal runs, most recent first."""
    if output_format == "json":
        return json.dumps(
            [RunSummary.from_run(run).model_dump(mode="json") for run in runs], indent=2
        )
    header = (
        f"{'COMPLETED':<27} {'ENV':<10} {'OPERATION':<10} {'OUTCOME':<22} {'VERSION':<24} RUN"
    )
    lines = ["", header]
    for run in runs:
        lines.append(
            f"{_time(run.completed_at):<27} {run.resolved_environment:<10} "
            f"{run.request.operation.value:<10} "
            f"{run.outcome.value if run.outcome else '-':<22} {run.version or '-':<24} {run.id}"
        )
    lines.append("")
    return "\n".join(lines)


__all__ = [
    "OUTPUT_FORMATS",
    "emit_run",
    "format_history",
    "format_rollback_table",
    "format_run_table",
    "format_status",
    "output_option",
]
