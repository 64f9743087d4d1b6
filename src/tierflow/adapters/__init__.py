"""Adapters binding the pipeline interfaces to commands, HTTP and files."""

from __future__ import annotations

from tierflow.adapters.checks import CommandCheck, HttpCheck, build_checks
from tierflow.adapters.command import CommandContentStore, CommandProvisioningEngine
from tierflow.adapters.registry import RegistryAuthorizationSource
from tierflow.adapters.webhooks import WebhookNotificationSink, WebhookNotifier

__all__ = [
    "CommandCheck",
    "CommandContentStore",
    "CommandProvisioningEngine",
    "HttpCheck",
    "RegistryAuthorizationSource",
    "WebhookNotificationSink",
    "WebhookNotifier",
    "build_checks",
]
