"""YAML actor registry used as the authorization source.

Format::

    actors:
      alice:
        role: owner
      bob:
        role: developer
        environments: [dev, staging]

An actor is known for an environment when it is listed and either has no
``environments`` restriction or lists that environment.
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field

from tierflow.interfaces import AuthorizationQueryResult, AuthorizationSource

logger = structlog.get_logger(__name__)


class RegistryEntry(BaseModel):
    """Role and optional environment restriction of one actor."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    role: str = Field(..., min_length=1, description="Actor role (``owner`` grants owner policy)")
    environments: list[str] | None = Field(
        default=None, description="Environments the actor may act on (None = all)"
    )


class ActorRegistry(BaseModel):
    """Parsed registry file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    actors: dict[str, RegistryEntry] = Field(default_factory=dict)


class RegistryAuthorizationSource(AuthorizationSource):
    """Authorization source backed by an ActorRegistry."""

    def __init__(self, registry: ActorRegistry) -> None:
        self.registry = registry

    @classmethod
    def from_file(cls, path: str | Path) -> RegistryAuthorizationSource:
        """Load the registry from a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the YAML root is not a mapping.
            pydantic.ValidationError: If the content is invalid.
        """
        registry_path = Path(path)
        with registry_path.open() as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Registry root must be a mapping: {registry_path}")
        registry = ActorRegistry.model_validate(data)
        logger.debug("registry_loaded", path=str(registry_path), actors=len(registry.actors))
        return cls(registry)

    def query(self, actor: str, environment: str) -> AuthorizationQueryResult:
        entry = self.registry.actors.get(actor)
        if entry is None:
            return AuthorizationQueryResult(allowed=False)
        if entry.environments is not None and environment not in entry.environments:
            return AuthorizationQueryResult(allowed=False, role=entry.role)
        return AuthorizationQueryResult(allowed=True, role=entry.role)


__all__ = ["ActorRegistry", "RegistryAuthorizationSource", "RegistryEntry"]
