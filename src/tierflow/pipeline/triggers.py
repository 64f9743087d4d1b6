"""Trigger classification.

Maps a raw inbound event to a typed trigger descriptor using an ordered rule
list. The first matching rule wins:

1. emergency flag set by the caller        -> emergency
2. release tag with hotfix/rollback suffix -> release_tag
3. plain release tag (optionally ``-rc.N``) -> release_tag
4. pull request targeting the main branch  -> pull_request
5. push to the main branch                 -> main_push
6. push (or pull request) on another branch -> feature_push
7. manual invocation without matching ref  -> manual_dispatch

Classification has no side effects. It fails only with MalformedEventError.

Example:
    >>> classifier = TriggerClassifier(main_branch="main")
    >>> event = TriggerEvent(kind="tag", ref="refs/tags/v1.3.0", actor="alice")
    >>> classifier.classify(event).trigger_type
    <TriggerType.RELEASE_TAG: 'release_tag'>
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from tierflow.errors import MalformedEventError
from tierflow.schemas.pipeline import (
    EventKind,
    ReleaseType,
    TriggerDescriptor,
    TriggerEvent,
    TriggerType,
)

logger = structlog.get_logger(__name__)

TAG_REF_PREFIX = "refs/tags/"
BRANCH_REF_PREFIX = "refs/heads/"

Rule = Callable[[TriggerEvent], "TriggerDescriptor | None"]


def _tag_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(
        rf"^{re.escape(prefix)}"
        r"(?P<version>\d+\.\d+\.\d+"
        r"(?:-(?P<suffix>rc|hotfix|rollback)\.(?P<number>\d+))?)$"
    )


def strip_ref(ref: str) -> str:
    """Strip ``refs/heads/`` or ``refs/tags/`` from a ref."""
    for prefix in (TAG_REF_PREFIX, BRANCH_REF_PREFIX):
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    return ref


class TriggerClassifier:
    """Ordered, deterministic trigger classifier.

    Args:
        main_branch: Name of the main integration branch.
        tag_prefix: Prefix of release tags (``v`` for ``v1.2.3``).
    """

    def __init__(self, main_branch: str = "main", tag_prefix: str = "v") -> None:
        self.main_branch = main_branch
        self.tag_prefix = tag_prefix
        self._tag_re = _tag_pattern(tag_prefix)
        self.rules: list[tuple[str, Rule]] = [
            ("emergency_flag", self._match_emergency),
            ("suffixed_release_tag", self._match_suffixed_tag),
            ("release_tag", self._match_release_tag),
            ("pull_request_to_main", self._match_pull_request_to_main),
            ("push_to_main", self._match_push_to_main),
            ("branch_activity", self._match_branch_activity),
            ("manual_invocation", self._match_manual),
        ]

    def classify(self, event: TriggerEvent) -> TriggerDescriptor:
        """Classify an event.

        Args:
            event: The inbound event.

        Returns:
            Descriptor produced by the first matching rule.

        Raises:
            MalformedEventError: If the event is structurally invalid or no rule matches.
        """
        self._check_well_formed(event)
        for rule_name, rule in self.rules:
            descriptor = rule(event)
            if descriptor is not None:
                logger.debug(
                    "trigger_classified",
                    rule=rule_name,
                    trigger_type=descriptor.trigger_type.value,
                    ref=event.ref,
                    actor=event.actor,
                )
                return descriptor
        raise MalformedEventError(
            f"no classification rule matches {event.kind.value} '{event.ref}'"
        )

    def classify_raw(self, raw: Mapping[str, Any]) -> tuple[TriggerEvent, TriggerDescriptor]:
        """Validate a raw event mapping and classify it.

        Raises:
            MalformedEventError: If the mapping does not describe a valid event.
        """
        try:
            event = TriggerEvent.model_validate(dict(raw))
        except ValidationError as e:
            raise MalformedEventError(
                "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'event'}: {err['msg']}"
                    for err in e.errors()
                )
            ) from e
        return event, self.classify(event)

    def _check_well_formed(self, event: TriggerEvent) -> None:
        if event.kind != EventKind.MANUAL and not strip_ref(event.ref).strip():
            raise MalformedEventError(f"{event.kind.value} event requires a ref")
        if event.kind == EventKind.PULL_REQUEST and not self._base_branch(event):
            raise MalformedEventError("pull_request event requires payload.base_ref")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _base_branch(self, event: TriggerEvent) -> str | None:
        base = event.payload.get("base_ref") or event.payload.get("base")
        if not isinstance(base, str) or not base.strip():
            return None
        return strip_ref(base)

    def _tag_candidate(self, event: TriggerEvent) -> str | None:
        """Return the tag name if the event refers to a tag."""
        if event.ref.startswith(TAG_REF_PREFIX) or event.kind == EventKind.TAG:
            return strip_ref(event.ref)
        if event.kind == EventKind.MANUAL and self._tag_re.match(event.ref):
            return event.ref
        return None

    def _release_tag(self, event: TriggerEvent) -> re.Match[str] | None:
        tag = self._tag_candidate(event)
        if tag is None:
            return None
        return self._tag_re.match(tag)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _match_emergency(self, event: TriggerEvent) -> TriggerDescriptor | None:
        if not event.manual_flags.get("emergency", False):
            return None
        return TriggerDescriptor(
            trigger_type=TriggerType.EMERGENCY,
            ref=strip_ref(event.ref),
        )

    def _match_suffixed_tag(self, event: TriggerEvent) -> TriggerDescriptor | None:
        match = self._release_tag(event)
        if match is None or match.group("suffix") not in ("hotfix", "rollback"):
            return None
        return TriggerDescriptor(
            trigger_type=TriggerType.RELEASE_TAG,
            ref=strip_ref(event.ref),
            release_type=ReleaseType(match.group("suffix")),
            tag_version=match.group("version"),
        )

    def _match_release_tag(self, event: TriggerEvent) -> TriggerDescriptor | None:
        match = self._release_tag(event)
        if match is None:
            return None
        release_type = ReleaseType.RC if match.group("suffix") == "rc" else ReleaseType.STANDARD
        return TriggerDescriptor(
            trigger_type=TriggerType.RELEASE_TAG,
            ref=strip_ref(event.ref),
            release_type=release_type,
            tag_version=match.group("version"),
        )

    def _match_pull_request_to_main(self, event: TriggerEvent) -> TriggerDescriptor | None:
        if event.kind != EventKind.PULL_REQUEST:
            return None
        base = self._base_branch(event)
        if base != self.main_branch:
            return None
        return TriggerDescriptor(
            trigger_type=TriggerType.PULL_REQUEST,
            ref=strip_ref(event.ref),
            target_branch=base,
        )

    def _match_push_to_main(self, event: TriggerEvent) -> TriggerDescriptor | None:
        if event.kind != EventKind.PUSH or event.ref.startswith(TAG_REF_PREFIX):
            return None
        if strip_ref(event.ref) != self.main_branch:
            return None
        return TriggerDescriptor(trigger_type=TriggerType.MAIN_PUSH, ref=self.main_branch)

    def _match_branch_activity(self, event: TriggerEvent) -> TriggerDescriptor | None:
        if event.kind not in (EventKind.PUSH, EventKind.PULL_REQUEST):
            return None
        if event.ref.startswith(TAG_REF_PREFIX):
            return None
        return TriggerDescriptor(
            trigger_type=TriggerType.FEATURE_PUSH,
            ref=strip_ref(event.ref),
            target_branch=self._base_branch(event),
        )

    def _match_manual(self, event: TriggerEvent) -> TriggerDescriptor | None:
        if event.kind != EventKind.MANUAL:
            return None
        return TriggerDescriptor(
            trigger_type=TriggerType.MANUAL_DISPATCH,
            ref=strip_ref(event.ref),
        )


__all__ = [
    "BRANCH_REF_PREFIX",
    "TAG_REF_PREFIX",
    "TriggerClassifier",
    "strip_ref",
]
