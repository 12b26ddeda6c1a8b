"""WebSocket endpoint for live check-in updates.

``/ws/events?user_id=bob`` streams only what concerns bob: lifecycle events
of pings he sends or receives, his own breaks and connections, and
notifications addressed to him. Without ``user_id`` a client sees
everything, which is what an operator dashboard wants.

Messages:
- Lifecycle events: {"type": "ping_completed", "ping": {...}, ...}
- Notifications: {"type": "notification", "category": "missed_ping", ...}
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterable, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from checkin.lifecycle.events import BreakEvent, ConnectionEvent, Event, PingEvent

logger = logging.getLogger(__name__)

router = APIRouter()


def event_audience(event: Event) -> set[str]:
    """User ids a lifecycle event is relevant to."""
    if isinstance(event, PingEvent):
        return {event.ping.sender_id, event.ping.receiver_id}
    if isinstance(event, ConnectionEvent):
        return {event.connection.sender_id, event.connection.receiver_id}
    if isinstance(event, BreakEvent):
        return {event.brk.sender_id}
    return set()


class SubscriberRegistry:
    """Open sockets keyed by the user they watch (None watches everyone)."""

    def __init__(self) -> None:
        self._subscribers: dict[WebSocket, Optional[str]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, websocket: WebSocket, user_id: Optional[str] = None) -> None:
        await websocket.accept()
        async with self._lock:
            self._subscribers[websocket] = user_id
        logger.info(
            "Live client joined for %s (%d open)",
            user_id or "all users",
            len(self._subscribers),
        )

    async def unsubscribe(self, websocket: WebSocket) -> None:
        async with self._lock:
            user_id = self._subscribers.pop(websocket, None)
        logger.info(
            "Live client left for %s (%d open)",
            user_id or "all users",
            len(self._subscribers),
        )

    async def publish(self, data: dict, audience: Iterable[str] = ()) -> int:
        """Send a message to the audience's sockets plus unfiltered ones.

        Returns the number of sockets reached. Sockets that fail to
        receive are dropped.
        """
        audience = set(audience)
        message = json.dumps(data, default=str)
        async with self._lock:
            targets = [
                ws
                for ws, user_id in self._subscribers.items()
                if user_id is None or user_id in audience
            ]

        reached = 0
        gone = []
        for ws in targets:
            try:
                await ws.send_text(message)
                reached += 1
            except Exception:
                gone.append(ws)

        if gone:
            async with self._lock:
                for ws in gone:
                    self._subscribers.pop(ws, None)
            logger.info("Dropped %d closed live client(s)", len(gone))
        return reached

    def watchers(self, user_id: str) -> int:
        """Open sockets that would receive a message for user_id."""
        return sum(1 for u in self._subscribers.values() if u is None or u == user_id)

    def __len__(self) -> int:
        return len(self._subscribers)


# Shared by the websocket route and the WebSocketTransport
registry = SubscriberRegistry()


@router.websocket("/ws/events")
async def websocket_events(
    websocket: WebSocket, user_id: Optional[str] = Query(None)
) -> None:
    """Stream lifecycle events and delivered notifications as JSON."""
    await registry.subscribe(websocket, user_id)
    try:
        while True:
            try:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
            except WebSocketDisconnect:
                break
    finally:
        await registry.unsubscribe(websocket)


async def broadcast_event(event: Event) -> None:
    """Event bus subscriber: forward lifecycle events to interested clients."""
    await registry.publish(event.to_dict(), event_audience(event))
