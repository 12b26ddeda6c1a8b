"""Typed event channel between the lifecycle engine and its consumers.

Publishers get on with their state transition regardless of what a
subscriber does: subscriber failures are logged and swallowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from checkin.models import Break, Connection, Ping, PingStatus, utc_now

logger = logging.getLogger(__name__)


class PingEventKind(str, Enum):
    CREATED = "ping_created"
    COMPLETED = "ping_completed"
    MISSED = "ping_missed"
    ON_BREAK = "ping_on_break"
    REVERTED = "ping_reverted"


class BreakEventKind(str, Enum):
    SCHEDULED = "break_scheduled"
    STARTED = "break_started"
    CANCELED = "break_canceled"
    COMPLETED = "break_completed"


class ConnectionEventKind(str, Enum):
    ACTIVATED = "connection_activated"
    PAUSED = "connection_paused"
    DELETED = "connection_deleted"


@dataclass(frozen=True)
class PingEvent:
    """A ping changed state (or was created)."""

    kind: PingEventKind
    ping: Ping
    previous_status: Optional[PingStatus] = None
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "type": self.kind.value,
            "ping": self.ping.to_dict(),
            "previous_status": (
                self.previous_status.value if self.previous_status else None
            ),
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass(frozen=True)
class BreakEvent:
    """A break was scheduled, started, canceled or ran to completion."""

    kind: BreakEventKind
    brk: Break
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "type": self.kind.value,
            "break": self.brk.to_dict(),
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass(frozen=True)
class ConnectionEvent:
    """A connection was activated, paused or soft-deleted."""

    kind: ConnectionEventKind
    connection: Connection
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "type": self.kind.value,
            "connection": self.connection.to_dict(),
            "occurred_at": self.occurred_at.isoformat(),
        }


Event = Union[PingEvent, BreakEvent, ConnectionEvent]
Subscriber = Callable[[Event], Awaitable[None]]


class EventBus:
    """In-process fan-out of lifecycle events to async subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    async def publish(self, event: Event) -> None:
        """Deliver an event to every subscriber, in subscription order."""
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.kind.value)
