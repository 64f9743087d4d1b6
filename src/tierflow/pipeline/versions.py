"""Release versioning.

Versions are ``major.minor.patch`` with an optional pre-release suffix
(``-rc.N``, ``-hotfix.<ms>``, ``-rollback.<ms>``) and are ordered by
Semantic Versioning 2.0 precedence: numeric components first, and a
pre-release ranks below the same version without one.

Each environment has its own version lineage. Rollback releases belong to
the lineage for audit purposes but never count as the latest version.

Example:
    >>> manager = VersionManager(InMemoryStateStore())
    >>> manager.next_version("prod", VersionBump.MINOR)
    ('1.0.0', <ReleaseType.STANDARD: 'standard'>)
"""

from __future__ import annotations

import functools
import re
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import structlog

from tierflow.errors import VersionRegressionError
from tierflow.pipeline.store import InMemoryStateStore
from tierflow.schemas.pipeline import Release, ReleaseType, VersionBump
from tierflow.telemetry.tracing import traced

logger = structlog.get_logger(__name__)

_SEMVER_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


@functools.total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """Parsed semantic version.

    Build metadata is kept for display but ignored for precedence.

    Examples:
        >>> SemanticVersion.parse("1.2.0-rc.1") < SemanticVersion.parse("1.2.0")
        True
    """

    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()
    build: str | None = field(default=None, compare=False)

    @classmethod
    def parse(cls, text: str) -> SemanticVersion:
        """Parse ``[v]major.minor.patch[-pre][+build]``.

        Raises:
            ValueError: If the text is not a semantic version.
        """
        match = _SEMVER_RE.match(text.strip())
        if match is None:
            raise ValueError(f"Invalid semantic version: '{text}'")
        prerelease = match.group("prerelease")
        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor")),
            patch=int(match.group("patch")),
            prerelease=tuple(prerelease.split(".")) if prerelease else (),
            build=match.group("build"),
        )

    @property
    def base(self) -> SemanticVersion:
        """The version without pre-release or build metadata."""
        return SemanticVersion(self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    @property
    def prerelease_kind(self) -> str | None:
        """First pre-release identifier (``rc``, ``hotfix``, ``rollback``)."""
        return self.prerelease[0] if self.prerelease else None

    def with_prerelease(self, *identifiers: str | int) -> SemanticVersion:
        return SemanticVersion(
            self.major, self.minor, self.patch, tuple(str(i) for i in identifiers)
        )

    def bump(self, part: VersionBump) -> SemanticVersion:
        """Increment a component and zero the lower ones.

        A pre-release of the target version is finalized rather than skipped:
        bumping the patch of ``1.4.0-rc.2`` yields ``1.4.0``.
        """
        if part == VersionBump.MAJOR:
            if self.is_prerelease and self.minor == 0 and self.patch == 0:
                return self.base
            return SemanticVersion(self.major + 1, 0, 0)
        if part == VersionBump.MINOR:
            if self.is_prerelease and self.patch == 0:
                return self.base
            return SemanticVersion(self.major, self.minor + 1, 0)
        if part == VersionBump.PATCH:
            if self.is_prerelease:
                return self.base
            return SemanticVersion(self.major, self.minor, self.patch + 1)
        raise ValueError(f"Cannot bump '{part.value}' directly")

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        if self.base != other.base:
            return (self.major, self.minor, self.patch) < (other.major, other.minor, other.patch)
        if not self.prerelease or not other.prerelease:
            return bool(self.prerelease) and not other.prerelease
        return _compare_prerelease(self.prerelease, other.prerelease) < 0

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(self.prerelease)
        if self.build:
            text += "+" + self.build
        return text


def _compare_prerelease(left: tuple[str, ...], right: tuple[str, ...]) -> int:
    for a, b in zip(left, right):
        if a == b:
            continue
        a_num, b_num = a.isdigit(), b.isdigit()
        if a_num and b_num:
            return -1 if int(a) < int(b) else 1
        if a_num != b_num:
            return -1 if a_num else 1
        return -1 if a < b else 1
    if len(left) == len(right):
        return 0
    return -1 if len(left) < len(right) else 1


class MillisecondClock:
    """Strictly increasing millisecond timestamps.

    Two calls never return the same value, even within one millisecond.
    """

    def __init__(self, now: Callable[[], float] = time.time) -> None:
        self._now = now
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            value = max(int(self._now() * 1000), self._last + 1)
            self._last = value
            return value


def _rc_number(version: SemanticVersion) -> int | None:
    """N of an ``-rc.N`` version, else None."""
    if len(version.prerelease) == 2 and version.prerelease[0] == "rc":
        if version.prerelease[1].isdigit():
            return int(version.prerelease[1])
    return None


_CONVENTIONAL_RE = re.compile(
    r"^(?P<type>[a-z]+)(?:\([^)]*\))?(?P<breaking>!)?:\s*(?P<subject>.+)$"
)


def build_release_notes(
    version: str,
    previous: str | None,
    commits: Iterable[str],
) -> str:
    """Build Markdown release notes from commit subjects.

    Conventional-commit ``feat`` subjects go under Features, ``fix`` under
    Fixes, everything else under Other Changes.

    Examples:
        >>> print(build_release_notes("1.1.0", "1.0.0", ["feat: add x", "fix(api): y"]))
        ## Release 1.1.0
        <BLANKLINE>
        Changes since 1.0.0.
        <BLANKLINE>
        ### Features
        - add x
        <BLANKLINE>
        ### Fixes
        - y
    """
    sections: dict[str, list[str]] = {"Features": [], "Fixes": [], "Other Changes": []}
    for message in commits:
        subject = message.strip().splitlines()[0] if message.strip() else ""
        if not subject:
            continue
        match = _CONVENTIONAL_RE.match(subject)
        if match is None:
            sections["Other Changes"].append(subject)
        elif match.group("type") == "feat":
            sections["Features"].append(match.group("subject"))
        elif match.group("type") == "fix":
            sections["Fixes"].append(match.group("subject"))
        else:
            sections["Other Changes"].append(subject)

    lines = [f"## Release {version}", ""]
    lines.append(f"Changes since {previous}." if previous else "Initial release.")
    for title, items in sections.items():
        if items:
            lines.extend(["", f"### {title}"])
            lines.extend(f"- {item}" for item in items)
    return "\n".join(lines)


class VersionManager:
    """Computes and validates release versions per environment lineage.

    Args:
        store: State store holding releases.
        initial_version: First version of an empty lineage.
        clock: Millisecond timestamp source for hotfix/rollback suffixes.
    """

    def __init__(
        self,
        store: InMemoryStateStore,
        initial_version: str = "1.0.0",
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.initial_version = SemanticVersion.parse(initial_version)
        self.clock = clock or MillisecondClock()
        self._lock = threading.RLock()

    def lineage(self, environment: str) -> list[SemanticVersion]:
        """Non-rollback versions of an environment in precedence order."""
        versions = [
            SemanticVersion.parse(r.version)
            for r in self.store.list_releases(environment)
            if r.release_type != ReleaseType.ROLLBACK
        ]
        return sorted(versions)

    def latest(self, environment: str) -> SemanticVersion | None:
        """Latest non-rollback version, or None for an empty lineage."""
        versions = self.lineage(environment)
        return versions[-1] if versions else None

    def next_version(self, environment: str, bump: VersionBump) -> tuple[str, ReleaseType]:
        """Compute the next version for a standard or rc increment."""
        latest = self.latest(environment)
        if bump == VersionBump.RC:
            rc = _rc_number(latest) if latest is not None else None
            if latest is None:
                candidate = self.initial_version.with_prerelease("rc", 1)
            elif rc is not None:
                candidate = latest.base.with_prerelease("rc", rc + 1)
            else:
                candidate = latest.base.bump(VersionBump.MINOR).with_prerelease("rc", 1)
            return str(candidate), ReleaseType.RC
        if latest is None:
            return str(self.initial_version), ReleaseType.STANDARD
        return str(latest.bump(bump)), ReleaseType.STANDARD

    def hotfix_version(self, environment: str) -> str:
        """Next patch of the latest base with a unique ``-hotfix.<ms>`` suffix."""
        latest = self.latest(environment)
        base = self.initial_version if latest is None else latest.base.bump(VersionBump.PATCH)
        return str(base.with_prerelease("hotfix", self.clock()))

    def rollback_tag(self, target_version: str) -> str:
        """Target version with a unique ``-rollback.<ms>`` suffix."""
        target = SemanticVersion.parse(target_version)
        return str(target.base.with_prerelease("rollback", self.clock()))

    def validate(self, environment: str, candidate: str) -> SemanticVersion:
        """Check that a candidate is strictly newer than the lineage's latest.

        Raises:
            ValueError: If the candidate is not a semantic version.
            VersionRegressionError: If the candidate does not exceed the latest.
        """
        parsed = SemanticVersion.parse(candidate)
        latest = self.latest(environment)
        if latest is not None and not parsed > latest:
            logger.warning(
                "version_regression",
                environment=environment,
                candidate=candidate,
                latest=str(latest),
            )
            raise VersionRegressionError(candidate, str(latest))
        return parsed

    def resolve(
        self,
        environment: str,
        request: str | None,
        *,
        hotfix: bool = False,
    ) -> tuple[str, ReleaseType]:
        """Turn a version request into a validated candidate.

        ``request`` is a bump name (major/minor/patch/rc), an explicit version,
        or None (a patch bump). Hotfix requests always get a timestamp suffix.

        Raises:
            VersionRegressionError: If the candidate does not exceed the latest.
            ValueError: If an explicit version is malformed.
        """
        with self._lock:
            if hotfix:
                candidate, release_type = self.hotfix_version(environment), ReleaseType.HOTFIX
            elif request is None or request in {b.value for b in VersionBump}:
                bump = VersionBump(request) if request else VersionBump.PATCH
                candidate, release_type = self.next_version(environment, bump)
            else:
                parsed = SemanticVersion.parse(request)
                candidate = str(parsed)
                kind = parsed.prerelease_kind
                if kind == "rc":
                    release_type = ReleaseType.RC
                elif kind == "hotfix":
                    release_type = ReleaseType.HOTFIX
                else:
                    release_type = ReleaseType.STANDARD
            self.validate(environment, candidate)
            return candidate, release_type

    @traced(name="tierflow.version.cut", attributes={"tierflow.component": "versions"})
    def cut(
        self,
        environment: str,
        request: str | None,
        *,
        hotfix: bool = False,
        create: bool = True,
        source_revision: str | None = None,
        commits: Iterable[str] = (),
        run_id: str | None = None,
    ) -> tuple[str, ReleaseType]:
        """Resolve a version request and create the release atomically.

        Concurrent cuts on one lineage never produce the same version.
        With ``create=False`` the version is computed and validated only.

        Raises:
            VersionRegressionError: If the candidate does not exceed the latest.
            ValueError: If an explicit version is malformed.
        """
        with self._lock:
            version, release_type = self.resolve(environment, request, hotfix=hotfix)
            if create:
                self.create_release(
                    environment,
                    version,
                    release_type,
                    source_revision=source_revision,
                    commits=commits,
                    run_id=run_id,
                )
            return version, release_type

    def create_release(
        self,
        environment: str,
        version: str,
        release_type: ReleaseType,
        *,
        source_revision: str | None = None,
        commits: Iterable[str] = (),
        run_id: str | None = None,
    ) -> Release:
        """Create and store an immutable release with generated notes."""
        previous = self.latest(environment)
        release = Release(
            version=version,
            release_type=release_type,
            environment=environment,
            source_revision=source_revision,
            notes=build_release_notes(version, str(previous) if previous else None, commits),
            run_id=run_id,
        )
        self.store.add_release(release)
        logger.info(
            "release_created",
            environment=environment,
            version=version,
            release_type=release_type.value,
            run_id=run_id,
        )
        return release


__all__ = [
    "MillisecondClock",
    "SemanticVersion",
    "VersionManager",
    "build_release_notes",
]
