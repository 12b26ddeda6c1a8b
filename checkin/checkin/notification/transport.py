"""Delivery backends for notifications.

Platform encoding (APNs/FCM) is the gateway's job; a transport only hands
over (fire_at, category, recipient, payload). ``send`` returns whether the
hand-off succeeded and never raises for delivery failures.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from checkin.notification.scheduler import ScheduledNotification

logger = logging.getLogger(__name__)


class NotificationTransport(Protocol):
    async def send(self, notification: ScheduledNotification) -> bool:
        ...


class LoggingTransport:
    """Writes each notification to the log. Default for local runs."""

    async def send(self, notification: ScheduledNotification) -> bool:
        logger.info(
            "Notification %s -> %s: %s",
            notification.category,
            notification.recipient_id,
            notification.payload.get("body", ""),
        )
        return True


class WebSocketTransport:
    """Pushes notifications to the recipient's /ws/events clients.

    Succeeds only if at least one open socket received the message.
    """

    def __init__(self, registry) -> None:
        self._registry = registry

    async def send(self, notification: ScheduledNotification) -> bool:
        reached = await self._registry.publish(
            {"type": "notification", **notification.to_dict()},
            audience=(notification.recipient_id,),
        )
        return reached > 0


class PushGatewayTransport:
    """POSTs notifications to an external push gateway."""

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def send(self, notification: ScheduledNotification) -> bool:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self._base_url}/notifications",
                    json=notification.to_dict(),
                    timeout=self._timeout,
                )
                resp.raise_for_status()
                return True
        except httpx.HTTPError as exc:
            logger.warning(
                "Push gateway delivery failed for %s: %s", notification.id, exc
            )
            return False


class FanoutTransport:
    """Sends through several transports; succeeds if any of them does."""

    def __init__(self, *transports: NotificationTransport) -> None:
        self._transports = list(transports)

    async def send(self, notification: ScheduledNotification) -> bool:
        delivered = False
        for transport in self._transports:
            try:
                delivered = await transport.send(notification) or delivered
            except Exception:
                logger.exception(
                    "Transport %s failed for %s",
                    type(transport).__name__,
                    notification.id,
                )
        return delivered
