"""Unit tests for the pipeline controller.

Tests cover:
- End-to-end event handling (main push, release tag, emergency, rollback tag)
- Authorization rejections with zero executed stages
- Release cutting, version regression and invalid versions
- Environment freezes and freeze-exempt operations
- Concurrent runs on one environment (non-overlapping lock windows)
- Cancellation of in-flight runs
- Publication to notification sinks and tracing
- Runs interrupted by unexpected collaborator errors
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from tierflow.errors import AuthorizationDenied, InvalidEnvironment, MalformedEventError
from tierflow.interfaces import (
    ApplyResult,
    AuthorizationQueryResult,
    AuthorizationSource,
    SyncResult,
)
from tierflow.pipeline.controller import PipelineController, commit_messages
from tierflow.pipeline.store import InMemoryStateStore
from tierflow.schemas.pipeline import (
    Operation,
    ReleaseType,
    RollbackStrategy,
    RunOutcome,
    StageName,
    StageStatus,
    TriggerType,
)

MakeController = Callable[..., PipelineController]


def _seed_prod(controller: PipelineController) -> None:
    for version, outcome in (("1.2.0", RunOutcome.DEPLOYED), ("1.3.0", RunOutcome.FAILED)):
        controller.versions.create_release("prod", version, ReleaseType.STANDARD)
        controller.store.record_release_outcome("prod", version, outcome, "seed")


class TestHandleEvent:
    """Tests for event-driven runs."""

    def test_main_push_deploys_to_staging(
        self, controller: PipelineController, sink: Any, provisioning: Any
    ) -> None:
        """A push to main deploys to staging and is published."""
        run = controller.handle_event(
            {"kind": "push", "ref": "refs/heads/main", "actor": "ci-bot"}
        )

        assert run.resolved_environment == "staging"
        assert run.request.trigger_type == TriggerType.MAIN_PUSH
        assert run.outcome == RunOutcome.DEPLOYED
        assert all(s.status == StageStatus.SUCCESS for s in run.stage_states)
        assert run.version is None
        assert provisioning.apply_calls == [("staging", "main")]

        [summary] = sink.summaries
        assert summary.run_id == run.id
        assert summary.environment == "staging"
        assert summary.outcome == RunOutcome.DEPLOYED
        assert controller.status()["staging"].triggering_run_id == run.id

    def test_release_tag_by_non_owner_rejected(
        self, controller: PipelineController, store: InMemoryStateStore, provisioning: Any
    ) -> None:
        """A release tag pushed by a non-owner is rejected before any stage runs."""
        run = controller.handle_event({"kind": "tag", "ref": "refs/tags/v1.3.0", "actor": "bob"})

        assert run.resolved_environment == "prod"
        assert run.outcome == RunOutcome.REJECTED
        assert run.outcome_code == "AUTHORIZATION_DENIED"
        assert "not an owner" in (run.outcome_reason or "")
        assert run.executed_stages == []
        assert provisioning.apply_calls == []
        assert store.list_releases("prod") == []
        [decision] = store.list_authorizations("prod")
        assert decision.allowed is False
        assert decision.run_id == run.id

    def test_release_tag_by_owner(
        self, controller: PipelineController, store: InMemoryStateStore
    ) -> None:
        """An owner's release tag cuts the tagged version and deploys it."""
        run = controller.handle_event(
            {
                "kind": "tag",
                "ref": "refs/tags/v1.3.0",
                "actor": "alice",
                "payload": {"commits": [{"message": "feat: search"}], "sha": "4f2c1e9"},
            }
        )

        release = store.get_release("prod", "1.3.0")
        assert run.outcome == RunOutcome.DEPLOYED
        assert run.version == "1.3.0"
        assert run.request.operation == Operation.RELEASE
        assert release is not None
        assert release.source_revision == "4f2c1e9"
        assert "- search" in release.notes
        assert store.release_outcome("prod", "1.3.0") == RunOutcome.DEPLOYED

    def test_emergency_rollback_event(
        self, controller: PipelineController, store: InMemoryStateStore
    ) -> None:
        """An emergency rollback restores the last known good release."""
        _seed_prod(controller)

        run = controller.handle_event(
            {
                "kind": "manual",
                "actor": "alice",
                "manual_flags": {"emergency": True},
                "explicit_environment": "prod",
                "reason": "checkout is down for every user",
                "payload": {"operation": "rollback"},
            }
        )

        [record] = store.list_rollbacks("prod")
        assert run.outcome == RunOutcome.DEPLOYED
        assert run.version == "1.2.0"
        assert run.request.trigger_type == TriggerType.EMERGENCY
        assert record.strategy.value == "last_known_good"

    def test_emergency_requires_reason(self, controller: PipelineController) -> None:
        """An emergency hotfix without a reason is rejected."""
        run = controller.handle_event(
            {
                "kind": "manual",
                "actor": "alice",
                "manual_flags": {"emergency": True},
                "explicit_environment": "prod",
            }
        )

        assert run.outcome == RunOutcome.REJECTED
        assert run.request.operation == Operation.HOTFIX

    def test_rollback_tag_event(
        self, controller: PipelineController, store: InMemoryStateStore
    ) -> None:
        """A rollback tag restores the tagged base version."""
        _seed_prod(controller)

        run = controller.handle_event(
            {"kind": "tag", "ref": "refs/tags/v1.2.0-rollback.1700000000000", "actor": "alice"}
        )

        [record] = store.list_rollbacks("prod")
        assert run.outcome == RunOutcome.DEPLOYED
        assert record.strategy.value == "specific_revision"
        assert record.target_version == "1.2.0"

    def test_malformed_event_propagates(self, controller: PipelineController, sink: Any) -> None:
        """Events that cannot be classified raise before any run exists."""
        with pytest.raises(MalformedEventError):
            controller.handle_event({"kind": "push", "actor": "alice"})

        assert sink.summaries == []

    def test_unknown_manual_operation(self, controller: PipelineController) -> None:
        """A manual event naming an unknown operation is malformed."""
        with pytest.raises(MalformedEventError, match="unknown operation"):
            controller.handle_event(
                {"kind": "manual", "actor": "alice", "payload": {"operation": "destroy"}}
            )

    def test_unknown_environment_propagates(self, controller: PipelineController) -> None:
        """An unknown explicit environment raises before any run exists."""
        with pytest.raises(InvalidEnvironment):
            controller.handle_event(
                {"kind": "manual", "actor": "alice", "explicit_environment": "qa"}
            )


class TestReleases:
    """Tests for release cutting."""

    def test_prod_deploy_cuts_release(
        self, controller: PipelineController, store: InMemoryStateStore
    ) -> None:
        """Deploys to the prod tier always carry a release."""
        run = controller.deploy("prod", "alice")

        assert run.outcome == RunOutcome.DEPLOYED
        assert run.version == "1.0.0"
        assert store.get_release("prod", "1.0.0") is not None

    def test_release_bump(self, controller: PipelineController) -> None:
        """Successive releases bump from the latest version."""
        controller.release("prod", "alice", "1.4.0")

        run = controller.release("prod", "alice", "minor")

        assert run.version == "1.5.0"

    def test_version_regression_fails_run(
        self, controller: PipelineController, provisioning: Any
    ) -> None:
        """A version not greater than the latest fails without executing stages."""
        controller.release("prod", "alice", "1.4.0")
        provisioning.apply_calls.clear()

        run = controller.release("prod", "alice", "1.4.0")

        assert run.outcome == RunOutcome.FAILED
        assert run.outcome_code == "VERSION_REGRESSION"
        assert run.executed_stages == []
        assert provisioning.apply_calls == []

    def test_invalid_version_fails_run(self, controller: PipelineController) -> None:
        """A malformed explicit version fails the run."""
        run = controller.release("prod", "alice", "banana")

        assert run.outcome == RunOutcome.FAILED
        assert run.outcome_code == "INVALID_VERSION"

    def test_failed_release_outcome_recorded(
        self, controller: PipelineController, store: InMemoryStateStore, content: Any
    ) -> None:
        """A release whose deploy failed is recorded as failed."""
        content.sync_results = [RuntimeError("bucket missing")]

        run = controller.release("prod", "alice", "2.0.0")

        assert run.outcome == RunOutcome.FAILED
        assert store.release_outcome("prod", "2.0.0") == RunOutcome.FAILED

    def test_dry_run_release_creates_nothing(
        self, controller: PipelineController, store: InMemoryStateStore
    ) -> None:
        """Dry-run releases compute the version without recording it."""
        run = controller.release("prod", "alice", "2.0.0", dry_run=True)

        assert run.version == "2.0.0"
        assert store.list_releases("prod") == []
        assert controller.status() == {}

    def test_hotfix(self, controller: PipelineController) -> None:
        """Hotfixes get a unique suffix on the next patch."""
        controller.release("prod", "alice", "1.3.0")

        run = controller.hotfix("prod", "alice", "checkout returns 500 for every order")

        assert run.outcome == RunOutcome.DEPLOYED
        assert run.release_type == ReleaseType.HOTFIX
        assert (run.version or "").startswith("1.3.1-hotfix.")

    def test_hotfix_without_reason_rejected(self, controller: PipelineController) -> None:
        """Hotfixes require a justification."""
        run = controller.hotfix("prod", "alice", None)

        assert run.outcome == RunOutcome.REJECTED


class TestFreeze:
    """Tests for environment freezes."""

    def test_frozen_environment_rejects_deploys(
        self, controller: PipelineController, provisioning: Any
    ) -> None:
        """Deploys to a frozen environment are rejected."""
        controller.freeze_environment("staging", "alice", "quarter-end")

        run = controller.deploy("staging", "alice")

        assert run.outcome == RunOutcome.REJECTED
        assert run.outcome_code == "ENVIRONMENT_FROZEN"
        assert "quarter-end" in (run.outcome_reason or "")
        assert provisioning.apply_calls == []

    def test_hotfix_and_rollback_bypass_freeze(self, controller: PipelineController) -> None:
        """Hotfixes and rollbacks are allowed on a frozen environment."""
        _seed_prod(controller)
        controller.freeze_environment("prod", "alice", "quarter-end")

        hotfix = controller.hotfix("prod", "alice", "checkout returns 500 for every order")
        rollback = controller.rollback(
            "prod", RollbackStrategy.LAST_KNOWN_GOOD, "alice", "hotfix made it worse"
        )

        assert hotfix.outcome == RunOutcome.DEPLOYED
        assert rollback.outcome == RunOutcome.DEPLOYED

    def test_unfreeze(self, controller: PipelineController) -> None:
        """Unfreezing restores deploys."""
        controller.freeze_environment("staging", "alice", "incident")

        lifted = controller.unfreeze_environment("staging", "alice")

        assert lifted is not None
        assert lifted.frozen_by == "alice"
        assert controller.deploy("staging", "alice").outcome == RunOutcome.DEPLOYED
        assert controller.unfreeze_environment("staging", "alice") is None

    def test_freeze_requires_authorization(self, controller: PipelineController) -> None:
        """Only actors allowed to deploy to an environment may freeze it."""
        with pytest.raises(AuthorizationDenied):
            controller.freeze_environment("prod", "bob", "not my call")

    def test_freeze_unknown_environment(self, controller: PipelineController) -> None:
        """Freezing an unconfigured environment fails."""
        with pytest.raises(InvalidEnvironment):
            controller.freeze_environment("qa", "alice", "nope")


class TestConcurrency:
    """Tests for concurrent runs and cancellation."""

    def test_concurrent_runs_serialize_infra(
        self, controller: PipelineController, provisioning: Any, store: InMemoryStateStore
    ) -> None:
        """Two runs on one environment never hold the infra lock at once."""
        provisioning.apply_delay = 0.1
        runs: list[Any] = []

        def deploy() -> None:
            runs.append(controller.deploy("staging", "alice"))

        threads = [threading.Thread(target=deploy) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10.0)

        assert [r.outcome for r in runs] == [RunOutcome.DEPLOYED, RunOutcome.DEPLOYED]
        first, second = store.lock_windows("staging")
        assert {first.run_id, second.run_id} == {r.id for r in runs}
        assert not first.overlaps(second)

    def test_cancel_in_flight_run(
        self, make_controller: MakeController, fake_check: Any, sink: Any
    ) -> None:
        """Cancelling an in-flight run stops it at the next stage boundary."""
        release = threading.Event()
        check = fake_check("gate", block=release)
        controller = make_controller(checks={StageName.BUILD_VALIDATE: [check]})
        result: list[Any] = []
        thread = threading.Thread(
            target=lambda: result.append(controller.deploy("staging", "alice"))
        )
        thread.start()
        try:
            deadline = time.monotonic() + 5.0
            while not check.contexts and time.monotonic() < deadline:
                time.sleep(0.005)
            [in_flight] = controller.store.list_runs("staging")

            assert controller.cancel(in_flight.id, "superseded") is True
        finally:
            release.set()
            thread.join(10.0)

        [run] = result
        assert run.outcome == RunOutcome.CANCELLED
        assert "superseded" in (run.outcome_reason or "")
        assert controller.status() == {}
        assert sink.summaries[-1].outcome == RunOutcome.CANCELLED

    def test_cancel_unknown_run(self, controller: PipelineController) -> None:
        """Cancelling a run that is not in flight returns False."""
        assert controller.cancel("no-such-run") is False


class TestQueries:
    """Tests for history and status queries."""

    def test_history_most_recent_first(self, controller: PipelineController) -> None:
        """History lists terminal runs newest first."""
        first = controller.deploy("staging", "alice")
        second = controller.deploy("dev", "alice")

        assert [r.id for r in controller.history()] == [second.id, first.id]
        assert [r.id for r in controller.history("staging")] == [first.id]
        assert len(controller.history(limit=1)) == 1

    def test_history_unknown_environment(self, controller: PipelineController) -> None:
        """History of an unconfigured environment fails."""
        with pytest.raises(InvalidEnvironment):
            controller.history("qa")

    def test_rerun_reports_no_changes(
        self, controller: PipelineController, provisioning: Any, content: Any
    ) -> None:
        """A re-run with nothing to change reports no_changes_detected."""
        controller.deploy("staging", "alice")
        provisioning.default_apply = ApplyResult(success=True, changed=False)
        content.default_sync = SyncResult(success=True, changed=False)

        run = controller.deploy("staging", "alice")

        assert run.outcome == RunOutcome.NO_CHANGES_DETECTED
        assert controller.status()["staging"].outcome == RunOutcome.NO_CHANGES_DETECTED


class TestPublication:
    """Tests for notification and tracing."""

    def test_failing_sink_does_not_fail_run(
        self, make_controller: MakeController, sink: Any
    ) -> None:
        """A sink that raises is logged and the remaining sinks still receive the run."""
        broken = MagicMock()
        broken.publish.side_effect = RuntimeError("webhook down")
        controller = make_controller(notifiers=[broken, sink])

        run = controller.deploy("staging", "alice")

        assert run.outcome == RunOutcome.DEPLOYED
        assert [s.run_id for s in sink.summaries] == [run.id]

    def test_run_is_traced(self, controller: PipelineController, span_exporter: Any) -> None:
        """Runs carry the trace id of their root span."""
        run = controller.deploy("staging", "alice")

        spans = {s.name: s for s in span_exporter.get_finished_spans()}
        root = spans["tierflow.pipeline.run"]
        assert run.trace_id == format(root.context.trace_id, "032x")
        assert root.attributes["tierflow.outcome"] == "deployed"
        assert "tierflow.stage.infra-apply" in spans


class _UnreachableSource(AuthorizationSource):
    def query(self, actor: str, environment: str) -> AuthorizationQueryResult:
        raise ConnectionError("registry unreachable")


class TestUnexpectedErrors:
    """Tests for collaborators failing mid-run."""

    def test_failing_authorization_source_fails_run(
        self, make_controller: MakeController, store: InMemoryStateStore, sink: Any
    ) -> None:
        """The run still reaches a terminal outcome and is published."""
        controller = make_controller(auth_source=_UnreachableSource())

        run = controller.deploy("staging", "bob")

        assert run.outcome == RunOutcome.FAILED
        assert run.outcome_code == "INTERNAL_ERROR"
        assert run.outcome_reason == "ConnectionError: registry unreachable"
        assert run.executed_stages == []
        assert [r.id for r in store.list_runs(terminal_only=True)] == [run.id]
        assert [r.id for r in store.list_runs()] == [run.id]
        assert [s.outcome for s in sink.summaries] == [RunOutcome.FAILED]
        assert controller.status()["staging"].outcome_code == "INTERNAL_ERROR"


class TestCommitMessages:
    """Tests for commit extraction from payloads."""

    def test_commit_messages(self) -> None:
        """Mapping and string commits are accepted; other entries ignored."""
        payload = {"commits": [{"message": "feat: a"}, "fix: b", {"id": "x"}, 3]}

        assert commit_messages(payload) == ("feat: a", "fix: b")

    def test_missing_commits(self) -> None:
        """Payloads without commits yield nothing."""
        assert commit_messages({"commits": "oops"}) == ()
        assert commit_messages({}) == ()
