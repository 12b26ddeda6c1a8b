"""Repository interface consumed by the lifecycle engine.

Single-row writes are assumed atomic. ``update_ping_status`` is a
conditional write (compare-and-swap on the status column): it applies only
while the row still has ``from_status`` and returns ``None`` otherwise.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional, Protocol, Sequence

from checkin.models import (
    Break,
    BreakStatus,
    Connection,
    ConnectionStatus,
    Ping,
    PingStatus,
    SenderProfile,
)
from checkin.notification.preferences import NotificationPreferences


class Repository(Protocol):
    # --- Pings ---

    async def create_ping(self, ping: Ping) -> Ping:
        """Insert a ping. Raises DuplicatePing on (connection_id, ping_date)."""
        ...

    async def get_ping(self, ping_id: str) -> Optional[Ping]:
        ...

    async def update_ping_status(
        self,
        ping_id: str,
        from_status: PingStatus,
        to_status: PingStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> Optional[Ping]:
        ...

    async def query_pings(
        self,
        *,
        sender_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        statuses: Optional[Sequence[PingStatus]] = None,
        ping_date: Optional[date] = None,
        ping_date_from: Optional[date] = None,
        scheduled_from: Optional[datetime] = None,
        deadline_before: Optional[datetime] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Ping]:
        """Filter pings, ordered by scheduled_time."""
        ...

    # --- Breaks ---

    async def create_break(self, brk: Break) -> Break:
        ...

    async def get_break(self, break_id: str) -> Optional[Break]:
        ...

    async def update_break(
        self,
        break_id: str,
        *,
        status: Optional[BreakStatus] = None,
        end_date: Optional[date] = None,
    ) -> Optional[Break]:
        ...

    async def query_breaks(
        self,
        *,
        sender_id: Optional[str] = None,
        statuses: Optional[Sequence[BreakStatus]] = None,
        covering: Optional[date] = None,
        overlapping: Optional[tuple[date, date]] = None,
        start_on_or_before: Optional[date] = None,
        start_after: Optional[date] = None,
        end_before: Optional[date] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Break]:
        """Filter breaks, ordered by start_date."""
        ...

    # --- Connections ---

    async def create_connection(self, connection: Connection) -> Connection:
        ...

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        ...

    async def update_connection_status(
        self, connection_id: str, status: ConnectionStatus
    ) -> Optional[Connection]:
        ...

    async def query_connections(
        self,
        *,
        sender_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
        statuses: Optional[Sequence[ConnectionStatus]] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> list[Connection]:
        ...

    # --- Profiles and preferences ---

    async def get_sender_profile(self, sender_id: str) -> Optional[SenderProfile]:
        ...

    async def save_sender_profile(self, profile: SenderProfile) -> SenderProfile:
        ...

    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        ...

    async def save_preferences(
        self, user_id: str, preferences: NotificationPreferences
    ) -> NotificationPreferences:
        ...

    # --- Notification log ---

    async def log_notification(
        self,
        user_id: str,
        category: str,
        fire_at: datetime,
        payload: dict,
    ) -> None:
        ...

    async def get_notifications(self, user_id: str, limit: int = 100) -> list[dict]:
        """Newest first."""
        ...
