from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from app.core.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    recipient: str
    template_id: str
    fields: dict[str, str] = field(default_factory=dict)

    def as_payload(self) -> dict[str, object]:
        return {"recipient": self.recipient, "template_id": self.template_id, "fields": self.fields}


class NotificationDispatcher(Protocol):
    async def send(self, notification: Notification) -> None: ...


class LoggingDispatcher:
    """Used when no webhook is configured."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification %s for %s fields=%s",
            notification.template_id,
            notification.recipient,
            sorted(notification.fields),
        )


class WebhookDispatcher:
    def __init__(self, url: str, timeout: float | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.timeout = timeout or settings.notification_timeout_seconds
        self._client = client

    async def send(self, notification: Notification) -> None:
        if self._client is not None:
            response = await self._client.post(self.url, json=notification.as_payload())
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=notification.as_payload())
            response.raise_for_status()


async def dispatch_all(dispatcher: NotificationDispatcher, notifications: list[Notification]) -> int:
    """Send each notification, logging failures. Returns the number delivered.

    Delivery is best effort and runs after commit, so no failure escapes.
    """
    delivered = 0
    for notification in notifications:
        try:
            await dispatcher.send(notification)
        except Exception:
            logger.warning(
                "Notification %s to %s failed",
                notification.template_id,
                notification.recipient,
                exc_info=True,
            )
            continue
        delivered += 1
    return delivered


def build_dispatcher() -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return WebhookDispatcher(settings.notification_webhook_url)
    return LoggingDispatcher()
