"""tierflow: deployment and release pipeline control for tiered environments.

This package provides:
- TriggerClassifier: Maps inbound events to trigger types
- resolve_environment: Deterministic trigger to environment resolution
- AuthorizationGate: Per-environment approval policy enforcement
- VersionManager: Semantic version lineage per environment
- StageExecutor: Ordered stage execution under a per-environment FIFO lock
- RollbackEngine: Last-known-good, specific-revision and partial rollbacks
- StatusReporter: Terminal outcome reporting per environment
- PipelineController: The end-to-end control flow

Example:
    >>> from tierflow.schemas import load_config
    >>> from tierflow.pipeline import PipelineController
    >>> controller = PipelineController.from_config(load_config("tierflow.yaml"))
    >>> run = controller.deploy("staging", "alice")
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
