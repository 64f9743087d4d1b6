"""Pipeline control: classification, authorization, versioning, execution, rollback."""

from __future__ import annotations

from tierflow.pipeline.authorization import AuthorizationGate, get_actor_identity
from tierflow.pipeline.controller import PipelineController
from tierflow.pipeline.environments import resolve_environment
from tierflow.pipeline.executor import StageExecutor, compute_outcome
from tierflow.pipeline.locks import CancellationToken, EnvironmentLockManager
from tierflow.pipeline.rollback import RollbackEngine
from tierflow.pipeline.status import StatusReporter
from tierflow.pipeline.store import FileStateStore, InMemoryStateStore
from tierflow.pipeline.triggers import TriggerClassifier
from tierflow.pipeline.versions import SemanticVersion, VersionManager

__all__ = [
    "AuthorizationGate",
    "CancellationToken",
    "EnvironmentLockManager",
    "FileStateStore",
    "InMemoryStateStore",
    "PipelineController",
    "RollbackEngine",
    "SemanticVersion",
    "StageExecutor",
    "StatusReporter",
    "TriggerClassifier",
    "VersionManager",
    "compute_outcome",
    "get_actor_identity",
    "resolve_environment",
]
