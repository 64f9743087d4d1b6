"""Webhook notifications for terminal pipeline runs.

Each configured webhook subscribes to run outcomes (``deployed``,
``failed``, ...) and optionally ``rollback``. A terminal run is posted as a
JSON run summary to every subscribed endpoint. Delivery retries server
errors, timeouts and connection errors with exponential backoff; client
errors are not retried.

Example:
    >>> from tierflow.schemas.config import WebhookConfig
    >>> config = WebhookConfig(url="https://hooks.example.com/x", events=["failed"])
    >>> notifier = WebhookNotifier([config])
    >>> sink = WebhookNotificationSink(notifier)
    >>> sink.publish(summary)  # doctest: +SKIP
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from tierflow.interfaces import NotificationSink
from tierflow.schemas.config import WebhookConfig
from tierflow.schemas.pipeline import Operation, RunSummary
from tierflow.telemetry.sanitization import sanitize_error_message
from tierflow.telemetry.tracing import create_span

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""

logger = structlog.get_logger(__name__)


class WebhookNotificationResult(BaseModel):
    """Result of one webhook delivery.

    Attributes:
        success: Whether the notification was delivered.
        status_code: Last HTTP status code received, if any.
        url: Target webhook URL.
        error: Error message if delivery failed.
        attempts: Number of delivery attempts made.
    """

    model_config = ConfigDict(extra="forbid")

    success: bool = Field(..., description="Whether notification delivered successfully")
    status_code: int | None = Field(default=None, description="HTTP response status code")
    url: str = Field(..., description="Target webhook URL")
    error: str | None = Field(default=None, description="Error message if failed")
    attempts: int = Field(default=1, ge=1, description="Number of delivery attempts")


def _backoff(attempt: int) -> float:
    return BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))


class WebhookNotifier:
    """Posts run events to every subscribed webhook.

    Args:
        configs: Webhook configurations.
    """

    def __init__(self, configs: list[WebhookConfig]) -> None:
        self.configs = list(configs)

    @staticmethod
    def build_payload(event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
        """Payload posted to a webhook."""
        return {"event_type": event_type, **event_data}

    async def notify(
        self,
        config: WebhookConfig,
        event_type: str,
        event_data: dict[str, Any],
    ) -> WebhookNotificationResult:
        """Deliver one event to one webhook, retrying per its configuration."""
        url = config.url
        payload = self.build_payload(event_type, event_data)
        max_attempts = 1 + config.retry_count
        log = logger.bind(url=url, event_type=event_type)

        with create_span(
            "tierflow.webhook.notify",
            attributes={
                "tierflow.webhook.url": url,
                "tierflow.webhook.event_type": event_type,
                "tierflow.webhook.max_retries": config.retry_count,
            },
        ) as span:
            start_time = time.monotonic()
            last_status: int | None = None
            last_error: str | None = None
            attempt = 0

            for attempt in range(1, max_attempts + 1):
                try:
                    async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                        response = await client.post(
                            url=url, json=payload, headers=config.headers or {}
                        )
                except httpx.TimeoutException:
                    last_error = "Request timed out"
                except httpx.RequestError as e:
                    last_error = sanitize_error_message(str(e))
                else:
                    last_status = response.status_code
                    if response.status_code < 400:
                        duration_ms = int((time.monotonic() - start_time) * 1000)
                        span.set_attribute("tierflow.webhook.attempts", attempt)
                        span.set_attribute("tierflow.webhook.success", True)
                        log.info(
                            "webhook_notification_sent",
                            status_code=response.status_code,
                            attempts=attempt,
                            duration_ms=duration_ms,
                        )
                        return WebhookNotificationResult(
                            success=True,
                            status_code=response.status_code,
                            url=url,
                            attempts=attempt,
                        )
                    if response.status_code < 500:
                        last_error = f"Client error: {response.status_code}"
                        break
                    last_error = f"Server error: {response.status_code}"

                if attempt < max_attempts:
                    delay = _backoff(attempt)
                    log.warning(
                        "webhook_notification_retry",
                        error=last_error,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        backoff_seconds=delay,
                    )
                    await asyncio.sleep(delay)

            duration_ms = int((time.monotonic() - start_time) * 1000)
            span.set_attribute("tierflow.webhook.attempts", attempt)
            span.set_attribute("tierflow.webhook.success", False)
            log.error(
                "webhook_notification_failed",
                status_code=last_status,
                error=last_error,
                attempts=attempt,
                duration_ms=duration_ms,
            )
            return WebhookNotificationResult(
                success=False,
                status_code=last_status,
                url=url,
                error=last_error,
                attempts=attempt,
            )

    async def notify_all(
        self,
        event_type: str,
        event_data: dict[str, Any],
    ) -> list[WebhookNotificationResult]:
        """Deliver an event to every subscribed webhook.

        A failing webhook does not stop delivery to the others.
        """
        results: list[WebhookNotificationResult] = []
        for config in self.configs:
            if event_type not in config.events:
                logger.debug(
                    "webhook_skipped",
                    url=config.url,
                    event_type=event_type,
                    reason="event_type_not_subscribed",
                )
                continue
            results.append(await self.notify(config, event_type, event_data))
        return results


class WebhookNotificationSink(NotificationSink):
    """Notification sink delivering run summaries through webhooks.

    Rollback runs are published under their outcome and under ``rollback``.
    """

    def __init__(self, notifier: WebhookNotifier) -> None:
        self.notifier = notifier

    @staticmethod
    def events_for(summary: RunSummary) -> list[str]:
        """Event types a run summary is published under."""
        events = [summary.outcome.value]
        if summary.operation == Operation.ROLLBACK:
            events.append("rollback")
        return events

    async def _publish(self, summary: RunSummary) -> list[WebhookNotificationResult]:
        data = summary.model_dump(mode="json")
        results: list[WebhookNotificationResult] = []
        for event_type in self.events_for(summary):
            results.extend(await self.notifier.notify_all(event_type, data))
        return results

    def publish(self, run_summary: RunSummary) -> None:
        results = asyncio.run(self._publish(run_summary))
        failed = [r.url for r in results if not r.success]
        if failed:
            logger.warning("webhook_delivery_incomplete", run_id=run_summary.run_id, failed=failed)


__all__ = [
    "BACKOFF_BASE_SECONDS",
    "WebhookNotificationResult",
    "WebhookNotificationSink",
    "WebhookNotifier",
]
