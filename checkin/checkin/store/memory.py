"""In-memory repository for tests and local development.

Every method completes without awaiting anything, so each call is atomic
with respect to other coroutines on the same event loop. That is what makes
the status compare-and-swap safe here.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Any, Optional, Sequence

from checkin.errors import DuplicatePing
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

_PING_FIELDS = {"completed_at", "completion_method", "verification_location"}


class InMemoryRepository:
    """Dict-backed implementation of the Repository protocol."""

    def __init__(self) -> None:
        self._pings: dict[str, Ping] = {}
        self._ping_days: dict[tuple[str, date], str] = {}
        self._breaks: dict[str, Break] = {}
        self._connections: dict[str, Connection] = {}
        self._profiles: dict[str, SenderProfile] = {}
        self._preferences: dict[str, NotificationPreferences] = {}
        self._notifications: list[dict] = []

    # ------------------------------------------------------------------
    # Pings
    # ------------------------------------------------------------------

    async def create_ping(self, ping: Ping) -> Ping:
        key = (ping.connection_id, ping.ping_date)
        if key in self._ping_days:
            raise DuplicatePing(
                f"Ping already exists for connection {ping.connection_id} "
                f"on {ping.ping_date.isoformat()}"
            )
        self._ping_days[key] = ping.id
        self._pings[ping.id] = ping
        return ping

    async def get_ping(self, ping_id: str) -> Optional[Ping]:
        return self._pings.get(ping_id)

    async def update_ping_status(
        self,
        ping_id: str,
        from_status: PingStatus,
        to_status: PingStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> Optional[Ping]:
        current = self._pings.get(ping_id)
        if current is None or current.status != from_status:
            return None
        updates = dict(fields or {})
        unknown = set(updates) - _PING_FIELDS
        if unknown:
            raise ValueError(f"Unsupported ping fields: {sorted(unknown)}")
        updated = replace(current, status=to_status, **updates)
        self._pings[ping_id] = updated
        return updated

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
        results = []
        for ping in self._pings.values():
            if sender_id is not None and ping.sender_id != sender_id:
                continue
            if receiver_id is not None and ping.receiver_id != receiver_id:
                continue
            if connection_id is not None and ping.connection_id != connection_id:
                continue
            if statuses is not None and ping.status not in statuses:
                continue
            if ping_date is not None and ping.ping_date != ping_date:
                continue
            if ping_date_from is not None and ping.ping_date < ping_date_from:
                continue
            if scheduled_from is not None and ping.scheduled_time < scheduled_from:
                continue
            if deadline_before is not None and not ping.deadline_time < deadline_before:
                continue
            results.append(ping)

        results.sort(key=lambda p: p.scheduled_time, reverse=descending)
        results = results[offset:]
        if limit is not None:
            results = results[:limit]
        return results

    # ------------------------------------------------------------------
    # Breaks
    # ------------------------------------------------------------------

    async def create_break(self, brk: Break) -> Break:
        self._breaks[brk.id] = brk
        return brk

    async def get_break(self, break_id: str) -> Optional[Break]:
        return self._breaks.get(break_id)

    async def update_break(
        self,
        break_id: str,
        *,
        status: Optional[BreakStatus] = None,
        end_date: Optional[date] = None,
    ) -> Optional[Break]:
        current = self._breaks.get(break_id)
        if current is None:
            return None
        updates: dict[str, Any] = {}
        if status is not None:
            updates["status"] = status
        if end_date is not None:
            updates["end_date"] = end_date
        updated = replace(current, **updates)
        self._breaks[break_id] = updated
        return updated

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
        results = []
        for brk in self._breaks.values():
            if sender_id is not None and brk.sender_id != sender_id:
                continue
            if statuses is not None and brk.status not in statuses:
                continue
            if covering is not None and not brk.covers(covering):
                continue
            if overlapping is not None and not brk.overlaps(*overlapping):
                continue
            if start_on_or_before is not None and brk.start_date > start_on_or_before:
                continue
            if start_after is not None and brk.start_date <= start_after:
                continue
            if end_before is not None and brk.end_date >= end_before:
                continue
            results.append(brk)

        results.sort(key=lambda b: (b.start_date, b.created_at), reverse=descending)
        if limit is not None:
            results = results[:limit]
        return results

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def create_connection(self, connection: Connection) -> Connection:
        self._connections[connection.id] = connection
        return connection

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    async def update_connection_status(
        self, connection_id: str, status: ConnectionStatus
    ) -> Optional[Connection]:
        current = self._connections.get(connection_id)
        if current is None:
            return None
        updated = replace(current, status=status)
        self._connections[connection_id] = updated
        return updated

    async def query_connections(
        self,
        *,
        sender_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
        statuses: Optional[Sequence[ConnectionStatus]] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> list[Connection]:
        results = []
        for conn in self._connections.values():
            if sender_id is not None and conn.sender_id != sender_id:
                continue
            if receiver_id is not None and conn.receiver_id != receiver_id:
                continue
            if statuses is not None and conn.status not in statuses:
                continue
            if ids is not None and conn.id not in ids:
                continue
            results.append(conn)
        results.sort(key=lambda c: c.created_at)
        return results

    # ------------------------------------------------------------------
    # Profiles and preferences
    # ------------------------------------------------------------------

    async def get_sender_profile(self, sender_id: str) -> Optional[SenderProfile]:
        return self._profiles.get(sender_id)

    async def save_sender_profile(self, profile: SenderProfile) -> SenderProfile:
        self._profiles[profile.sender_id] = profile
        return profile

    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        return self._preferences.get(user_id)

    async def save_preferences(
        self, user_id: str, preferences: NotificationPreferences
    ) -> NotificationPreferences:
        self._preferences[user_id] = preferences
        return preferences

    # ------------------------------------------------------------------
    # Notification log
    # ------------------------------------------------------------------

    async def log_notification(
        self,
        user_id: str,
        category: str,
        fire_at: datetime,
        payload: dict,
    ) -> None:
        self._notifications.append(
            {
                "id": len(self._notifications) + 1,
                "user_id": user_id,
                "category": category,
                "fire_at": fire_at.isoformat(),
                "payload": dict(payload),
            }
        )

    async def get_notifications(self, user_id: str, limit: int = 100) -> list[dict]:
        matching = [n for n in self._notifications if n["user_id"] == user_id]
        matching.sort(key=lambda n: (n["fire_at"], n["id"]), reverse=True)
        return matching[:limit]
