"""Contract tests for error codes and CLI exit codes.

CI systems branch on tierflow exit codes and on the machine-readable
outcome codes of run summaries, so both are part of the public contract.

Tests cover:
- Every pipeline error has a stable code and exit code
- Terminal run outcomes map to documented exit codes
- Run summary field set
"""

from __future__ import annotations

import pytest

from tierflow import errors
from tierflow.cli.utils import CODE_EXIT_CODES, ExitCode, run_exit_code
from tierflow.schemas.pipeline import (
    DeploymentRequest,
    PipelineRun,
    RunOutcome,
    RunSummary,
    TriggerType,
)

EXPECTED_CODES: dict[type[errors.PipelineError], tuple[str, int]] = {
    errors.MalformedEventError: ("MALFORMED_EVENT", 10),
    errors.InvalidEnvironment: ("INVALID_ENVIRONMENT", 11),
    errors.VersionRegressionError: ("VERSION_REGRESSION", 12),
    errors.AuthorizationDenied: ("AUTHORIZATION_DENIED", 13),
    errors.StageTimeout: ("STAGE_TIMEOUT", 14),
    errors.StageValidationFailure: ("VALIDATION_FAILED", 15),
    errors.ProvisioningError: ("PROVISIONING_FAILED", 16),
    errors.TransientProvisioningError: ("PROVISIONING_FAILED", 16),
    errors.LockContentionError: ("LOCK_CONTENTION", 17),
    errors.RollbackTargetNotFound: ("ROLLBACK_TARGET_NOT_FOUND", 18),
    errors.EnvironmentFrozenError: ("ENVIRONMENT_FROZEN", 19),
    errors.RunCancelledError: ("CANCELLED", 20),
}


def _run(
    outcome: RunOutcome, code: str | None = None, *, dry_run: bool = False
) -> PipelineRun:
    return PipelineRun(
        request=DeploymentRequest(
            trigger_type=TriggerType.MAIN_PUSH, actor="alice", dry_run=dry_run
        ),
        resolved_environment="staging",
        outcome=outcome,
        outcome_code=code,
    )


class TestErrorCodes:
    """Error classes keep their codes."""

    @pytest.mark.parametrize(("error_cls", "expected"), list(EXPECTED_CODES.items()))
    def test_codes(
        self, error_cls: type[errors.PipelineError], expected: tuple[str, int]
    ) -> None:
        """Each error class exposes its code and exit code."""
        assert (error_cls.code, error_cls.exit_code) == expected

    def test_all_errors_are_pipeline_errors(self) -> None:
        """Every error can be caught as PipelineError."""
        for error_cls in EXPECTED_CODES:
            assert issubclass(error_cls, errors.PipelineError)

    def test_exit_codes_unique_per_code(self) -> None:
        """Each outcome code maps to one exit code."""
        assert CODE_EXIT_CODES["STAGE_TIMEOUT"] == ExitCode.STAGE_TIMEOUT
        assert CODE_EXIT_CODES["INVALID_VERSION"] == ExitCode.USAGE_ERROR
        assert len(set(CODE_EXIT_CODES.values())) == len(CODE_EXIT_CODES)


class TestRunExitCodes:
    """Terminal runs map to documented exit codes."""

    @pytest.mark.parametrize(
        ("outcome", "code", "expected"),
        [
            (RunOutcome.DEPLOYED, None, 0),
            (RunOutcome.FAILED, None, 1),
            (RunOutcome.FAILED, "INVALID_VERSION", 2),
            (RunOutcome.NO_CHANGES_DETECTED, None, 3),
            (RunOutcome.CONDITIONS_NOT_MET, None, 4),
            (RunOutcome.FAILED, "STAGE_TIMEOUT", 14),
            (RunOutcome.FAILED, "PROVISIONING_FAILED", 16),
            (RunOutcome.REJECTED, None, 13),
            (RunOutcome.REJECTED, "ENVIRONMENT_FROZEN", 19),
            (RunOutcome.CANCELLED, "CANCELLED", 20),
            (RunOutcome.FAILED, "STAGE_ERROR", 1),
        ],
    )
    def test_outcome_exit_codes(
        self, outcome: RunOutcome, code: str | None, expected: int
    ) -> None:
        """Outcome and outcome code decide the exit code."""
        assert run_exit_code(_run(outcome, code)) == expected

    def test_dry_run_exits_zero(self) -> None:
        """A dry run that neither failed nor was rejected exits 0."""
        assert run_exit_code(_run(RunOutcome.CONDITIONS_NOT_MET, dry_run=True)) == 0
        assert run_exit_code(_run(RunOutcome.FAILED, "VALIDATION_FAILED", dry_run=True)) == 15


class TestRunSummaryContract:
    """Published run summaries keep their fields."""

    def test_fields(self) -> None:
        """Sinks receive exactly these fields."""
        assert set(RunSummary.model_fields) == {
            "run_id",
            "environment",
            "trigger_type",
            "operation",
            "actor",
            "outcome",
            "outcome_code",
            "outcome_reason",
            "version",
            "dry_run",
            "stages",
            "started_at",
            "completed_at",
            "trace_id",
        }

    def test_in_flight_run_has_no_summary(self) -> None:
        """Only terminal runs can be summarized."""
        run = PipelineRun(
            request=DeploymentRequest(trigger_type=TriggerType.MAIN_PUSH, actor="alice"),
            resolved_environment="staging",
        )

        with pytest.raises(ValueError, match="not terminal"):
            RunSummary.from_run(run)
