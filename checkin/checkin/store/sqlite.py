"""SQLite repository for pings, breaks, connections and preferences.

Uses aiosqlite for async database access.
Database location: ~/.checkin/checkin.db
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import aiosqlite

from checkin.config import DB_PATH
from checkin.errors import DuplicatePing
from checkin.models import (
    Break,
    BreakStatus,
    CompletionMethod,
    Connection,
    ConnectionStatus,
    Location,
    Ping,
    PingStatus,
    SenderProfile,
)
from checkin.notification.preferences import NotificationPreferences

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS connections (
    id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    receiver_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sender_profiles (
    sender_id TEXT PRIMARY KEY,
    ping_time TEXT NOT NULL,
    grace_period_minutes INTEGER NOT NULL,
    ping_enabled INTEGER NOT NULL,
    timezone TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pings (
    id TEXT PRIMARY KEY,
    connection_id TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    receiver_id TEXT NOT NULL,
    scheduled_time TEXT NOT NULL,
    deadline_time TEXT NOT NULL,
    ping_date TEXT NOT NULL,
    status TEXT NOT NULL,
    completed_at TEXT,
    completion_method TEXT,
    location_lat REAL,
    location_lon REAL,
    location_accuracy REAL,
    created_at TEXT NOT NULL,
    UNIQUE (connection_id, ping_date)
);

CREATE TABLE IF NOT EXISTS breaks (
    id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    status TEXT NOT NULL,
    notes TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notification_preferences (
    user_id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notification_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    category TEXT NOT NULL,
    fire_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_pings_sender_date ON pings(sender_id, ping_date);
CREATE INDEX IF NOT EXISTS idx_pings_status_deadline ON pings(status, deadline_time);
CREATE INDEX IF NOT EXISTS idx_breaks_sender_start ON breaks(sender_id, start_date);
CREATE INDEX IF NOT EXISTS idx_connections_sender ON connections(sender_id);
CREATE INDEX IF NOT EXISTS idx_notification_log_user ON notification_log(user_id, fire_at);
"""

_PING_COLUMNS = (
    "id, connection_id, sender_id, receiver_id, scheduled_time, deadline_time, "
    "ping_date, status, completed_at, completion_method, location_lat, "
    "location_lon, location_accuracy, created_at"
)
_BREAK_COLUMNS = "id, sender_id, start_date, end_date, status, notes, created_at"
_CONNECTION_COLUMNS = "id, sender_id, receiver_id, status, created_at"


def _ts(value: datetime) -> str:
    """Fixed-width UTC ISO string so lexical order matches time order."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _in_clause(column: str, values: Sequence[Any]) -> tuple[str, list]:
    placeholders = ", ".join("?" for _ in values)
    return f"{column} IN ({placeholders})", [getattr(v, "value", v) for v in values]


def _row_to_ping(row) -> Ping:
    location = None
    if row[10] is not None and row[11] is not None:
        location = Location(lat=row[10], lon=row[11], accuracy=row[12])
    return Ping(
        id=row[0],
        connection_id=row[1],
        sender_id=row[2],
        receiver_id=row[3],
        scheduled_time=_parse_ts(row[4]),
        deadline_time=_parse_ts(row[5]),
        ping_date=date.fromisoformat(row[6]),
        status=PingStatus(row[7]),
        completed_at=_parse_ts(row[8]),
        completion_method=CompletionMethod(row[9]) if row[9] else None,
        verification_location=location,
        created_at=_parse_ts(row[13]),
    )


def _row_to_break(row) -> Break:
    return Break(
        id=row[0],
        sender_id=row[1],
        start_date=date.fromisoformat(row[2]),
        end_date=date.fromisoformat(row[3]),
        status=BreakStatus(row[4]),
        notes=row[5],
        created_at=_parse_ts(row[6]),
    )


def _row_to_connection(row) -> Connection:
    return Connection(
        id=row[0],
        sender_id=row[1],
        receiver_id=row[2],
        status=ConnectionStatus(row[3]),
        created_at=_parse_ts(row[4]),
    )


class SQLiteRepository:
    """Async SQLite implementation of the Repository protocol."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = Path(db_path) if db_path else DB_PATH
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        """Open the database and create tables if needed."""
        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.info("Check-in store opened at %s", self._db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("Check-in store closed.")

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteRepository is not open")
        return self._db

    # ------------------------------------------------------------------
    # Pings
    # ------------------------------------------------------------------

    async def create_ping(self, ping: Ping) -> Ping:
        loc = ping.verification_location
        try:
            await self.db.execute(
                f"INSERT INTO pings ({_PING_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    ping.id,
                    ping.connection_id,
                    ping.sender_id,
                    ping.receiver_id,
                    _ts(ping.scheduled_time),
                    _ts(ping.deadline_time),
                    ping.ping_date.isoformat(),
                    ping.status.value,
                    _ts(ping.completed_at) if ping.completed_at else None,
                    ping.completion_method.value if ping.completion_method else None,
                    loc.lat if loc else None,
                    loc.lon if loc else None,
                    loc.accuracy if loc else None,
                    _ts(ping.created_at),
                ),
            )
        except aiosqlite.IntegrityError as e:
            await self.db.rollback()
            raise DuplicatePing(
                f"Ping already exists for connection {ping.connection_id} "
                f"on {ping.ping_date.isoformat()}"
            ) from e
        await self.db.commit()
        return ping

    async def get_ping(self, ping_id: str) -> Optional[Ping]:
        async with self.db.execute(
            f"SELECT {_PING_COLUMNS} FROM pings WHERE id = ?", (ping_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_ping(row) if row else None

    async def update_ping_status(
        self,
        ping_id: str,
        from_status: PingStatus,
        to_status: PingStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> Optional[Ping]:
        assignments = ["status = ?"]
        params: list = [to_status.value]

        for name, value in (fields or {}).items():
            if name == "completed_at":
                assignments.append("completed_at = ?")
                params.append(_ts(value) if value else None)
            elif name == "completion_method":
                assignments.append("completion_method = ?")
                params.append(value.value if value else None)
            elif name == "verification_location":
                assignments.extend(
                    ["location_lat = ?", "location_lon = ?", "location_accuracy = ?"]
                )
                if value is None:
                    params.extend([None, None, None])
                else:
                    params.extend([value.lat, value.lon, value.accuracy])
            else:
                raise ValueError(f"Unsupported ping field: {name}")

        params.extend([ping_id, from_status.value])
        cursor = await self.db.execute(
            f"UPDATE pings SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params,
        )
        changed = cursor.rowcount
        await cursor.close()
        await self.db.commit()
        if changed == 0:
            return None
        return await self.get_ping(ping_id)

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
        query = f"SELECT {_PING_COLUMNS} FROM pings"
        params: list = []
        conditions = []

        if sender_id is not None:
            conditions.append("sender_id = ?")
            params.append(sender_id)
        if receiver_id is not None:
            conditions.append("receiver_id = ?")
            params.append(receiver_id)
        if connection_id is not None:
            conditions.append("connection_id = ?")
            params.append(connection_id)
        if statuses is not None:
            if not statuses:
                return []
            clause, values = _in_clause("status", statuses)
            conditions.append(clause)
            params.extend(values)
        if ping_date is not None:
            conditions.append("ping_date = ?")
            params.append(ping_date.isoformat())
        if ping_date_from is not None:
            conditions.append("ping_date >= ?")
            params.append(ping_date_from.isoformat())
        if scheduled_from is not None:
            conditions.append("scheduled_time >= ?")
            params.append(_ts(scheduled_from))
        if deadline_before is not None:
            conditions.append("deadline_time < ?")
            params.append(_ts(deadline_before))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY scheduled_time " + ("DESC" if descending else "ASC")
        if limit is not None or offset:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit if limit is not None else -1, offset])

        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_ping(row) for row in rows]

    # ------------------------------------------------------------------
    # Breaks
    # ------------------------------------------------------------------

    async def create_break(self, brk: Break) -> Break:
        await self.db.execute(
            f"INSERT INTO breaks ({_BREAK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                brk.id,
                brk.sender_id,
                brk.start_date.isoformat(),
                brk.end_date.isoformat(),
                brk.status.value,
                brk.notes,
                _ts(brk.created_at),
            ),
        )
        await self.db.commit()
        return brk

    async def get_break(self, break_id: str) -> Optional[Break]:
        async with self.db.execute(
            f"SELECT {_BREAK_COLUMNS} FROM breaks WHERE id = ?", (break_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_break(row) if row else None

    async def update_break(
        self,
        break_id: str,
        *,
        status: Optional[BreakStatus] = None,
        end_date: Optional[date] = None,
    ) -> Optional[Break]:
        assignments = []
        params: list = []
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
        if end_date is not None:
            assignments.append("end_date = ?")
            params.append(end_date.isoformat())
        if assignments:
            params.append(break_id)
            await self.db.execute(
                f"UPDATE breaks SET {', '.join(assignments)} WHERE id = ?", params
            )
            await self.db.commit()
        return await self.get_break(break_id)

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
        query = f"SELECT {_BREAK_COLUMNS} FROM breaks"
        params: list = []
        conditions = []

        if sender_id is not None:
            conditions.append("sender_id = ?")
            params.append(sender_id)
        if statuses is not None:
            if not statuses:
                return []
            clause, values = _in_clause("status", statuses)
            conditions.append(clause)
            params.extend(values)
        if covering is not None:
            conditions.append("start_date <= ? AND end_date >= ?")
            params.extend([covering.isoformat(), covering.isoformat()])
        if overlapping is not None:
            start, end = overlapping
            conditions.append("start_date <= ? AND end_date >= ?")
            params.extend([end.isoformat(), start.isoformat()])
        if start_on_or_before is not None:
            conditions.append("start_date <= ?")
            params.append(start_on_or_before.isoformat())
        if start_after is not None:
            conditions.append("start_date > ?")
            params.append(start_after.isoformat())
        if end_before is not None:
            conditions.append("end_date < ?")
            params.append(end_before.isoformat())

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        order = "DESC" if descending else "ASC"
        query += f" ORDER BY start_date {order}, created_at {order}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_break(row) for row in rows]

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def create_connection(self, connection: Connection) -> Connection:
        await self.db.execute(
            f"INSERT INTO connections ({_CONNECTION_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            (
                connection.id,
                connection.sender_id,
                connection.receiver_id,
                connection.status.value,
                _ts(connection.created_at),
            ),
        )
        await self.db.commit()
        return connection

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        async with self.db.execute(
            f"SELECT {_CONNECTION_COLUMNS} FROM connections WHERE id = ?",
            (connection_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_connection(row) if row else None

    async def update_connection_status(
        self, connection_id: str, status: ConnectionStatus
    ) -> Optional[Connection]:
        await self.db.execute(
            "UPDATE connections SET status = ? WHERE id = ?",
            (status.value, connection_id),
        )
        await self.db.commit()
        return await self.get_connection(connection_id)

    async def query_connections(
        self,
        *,
        sender_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
        statuses: Optional[Sequence[ConnectionStatus]] = None,
        ids: Optional[Sequence[str]] = None,
    ) -> list[Connection]:
        query = f"SELECT {_CONNECTION_COLUMNS} FROM connections"
        params: list = []
        conditions = []

        if sender_id is not None:
            conditions.append("sender_id = ?")
            params.append(sender_id)
        if receiver_id is not None:
            conditions.append("receiver_id = ?")
            params.append(receiver_id)
        if statuses is not None:
            if not statuses:
                return []
            clause, values = _in_clause("status", statuses)
            conditions.append(clause)
            params.extend(values)
        if ids is not None:
            if not ids:
                return []
            clause, values = _in_clause("id", ids)
            conditions.append(clause)
            params.extend(values)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at ASC"

        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_connection(row) for row in rows]

    # ------------------------------------------------------------------
    # Profiles and preferences
    # ------------------------------------------------------------------

    async def get_sender_profile(self, sender_id: str) -> Optional[SenderProfile]:
        async with self.db.execute(
            "SELECT sender_id, ping_time, grace_period_minutes, ping_enabled, timezone "
            "FROM sender_profiles WHERE sender_id = ?",
            (sender_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SenderProfile(
            sender_id=row[0],
            ping_time=row[1],
            grace_period_minutes=row[2],
            ping_enabled=bool(row[3]),
            timezone=row[4],
        )

    async def save_sender_profile(self, profile: SenderProfile) -> SenderProfile:
        await self.db.execute(
            "INSERT INTO sender_profiles "
            "(sender_id, ping_time, grace_period_minutes, ping_enabled, timezone) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(sender_id) DO UPDATE SET "
            "ping_time = excluded.ping_time, "
            "grace_period_minutes = excluded.grace_period_minutes, "
            "ping_enabled = excluded.ping_enabled, "
            "timezone = excluded.timezone",
            (
                profile.sender_id,
                profile.ping_time,
                profile.grace_period_minutes,
                int(profile.ping_enabled),
                profile.timezone,
            ),
        )
        await self.db.commit()
        return profile

    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        async with self.db.execute(
            "SELECT data FROM notification_preferences WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return NotificationPreferences.from_dict(json.loads(row[0]))

    async def save_preferences(
        self, user_id: str, preferences: NotificationPreferences
    ) -> NotificationPreferences:
        await self.db.execute(
            "INSERT INTO notification_preferences (user_id, data) VALUES (?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET data = excluded.data",
            (user_id, json.dumps(preferences.to_dict())),
        )
        await self.db.commit()
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
        await self.db.execute(
            "INSERT INTO notification_log (user_id, category, fire_at, payload) "
            "VALUES (?, ?, ?, ?)",
            (user_id, category, _ts(fire_at), json.dumps(payload, default=str)),
        )
        await self.db.commit()

    async def get_notifications(self, user_id: str, limit: int = 100) -> list[dict]:
        async with self.db.execute(
            "SELECT id, user_id, category, fire_at, payload FROM notification_log "
            "WHERE user_id = ? ORDER BY fire_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            {
                "id": row[0],
                "user_id": row[1],
                "category": row[2],
                "fire_at": row[3],
                "payload": json.loads(row[4]),
            }
            for row in rows
        ]
