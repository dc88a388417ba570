"""Notification and live-output sinks consumed by the execution engine."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from agent_tasks.orchestrator.models import to_iso, utc_now

if TYPE_CHECKING:
    from agent_tasks.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0
PAYLOAD_OUTPUT_MAX_CHARS = 500


class TaskEvent(str, Enum):
    """Lifecycle events announced to the notification sink."""

    STARTED = "task_started"
    COMPLETED = "task_completed"
    RETRY = "task_retry"
    FAILED = "task_failed"


class NotificationSink(Protocol):
    """Receives task lifecycle events; delivery is best effort."""

    def notify(self, event: TaskEvent, payload: dict[str, Any]) -> None:
        """Deliver one event."""


class OutputSink(Protocol):
    """Receives every non-empty line the agent prints."""

    def on_output_line(self, task_id: str, line: str) -> None:
        """Observe one output line."""


class LoggingNotifier:
    """Writes task events to the application log."""

    def notify(self, event: TaskEvent, payload: dict[str, Any]) -> None:
        logger.info(
            "%s: task=%s retry=%s/%s reason=%s",
            event.value,
            payload.get("task_id"),
            payload.get("current_retry"),
            payload.get("max_retries"),
            payload.get("reason") or "-",
        )


class WebhookNotifier:
    """POSTs task events as JSON to a chat bridge or any HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def notify(self, event: TaskEvent, payload: dict[str, Any]) -> None:
        body = {"event": event.value, "payload": payload, "sent_at": to_iso(utc_now())}
        try:
            response = self._client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Webhook rejected %s: HTTP %s",
                event.value,
                exc.response.status_code,
            )
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery failed for %s: %s", event.value, exc)

    def close(self) -> None:
        self._client.close()


def build_payload(  # noqa: PLR0913
    *,
    task_id: str,
    requirement: str,
    current_retry: int,
    max_retries: int,
    reason: str | None = None,
    output: str | None = None,
) -> dict[str, Any]:
    """Structured event payload with enough data to render a message."""

    payload: dict[str, Any] = {
        "task_id": task_id,
        "requirement": requirement,
        "current_retry": current_retry,
        "max_retries": max_retries,
        "reason": reason,
    }
    if output is not None:
        payload["output"] = output[-PAYLOAD_OUTPUT_MAX_CHARS:]
    return payload


def build_notifier(settings: Settings) -> NotificationSink:
    """Webhook notifier when a URL is configured, log-only otherwise."""

    url = settings.notifications.webhook_url
    if url:
        return WebhookNotifier(url, timeout_seconds=settings.notifications.timeout_seconds)
    return LoggingNotifier()
