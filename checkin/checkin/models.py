"""Domain records: pings, breaks, connections and sender profiles.

Records are frozen dataclasses. Stores return fresh instances; callers
derive updated copies with ``dataclasses.replace`` rather than mutating.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from checkin.lifecycle.deadline import DEFAULT_GRACE_PERIOD_MINUTES


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    MISSED = "missed"
    ON_BREAK = "on_break"


class CompletionMethod(str, Enum):
    TAP = "tap"
    IN_PERSON = "in_person"
    AUTO_BREAK = "auto_break"


class BreakStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    DELETED = "deleted"


# Breaks in these states suspend obligations and block overlapping breaks.
OPEN_BREAK_STATUSES = (BreakStatus.SCHEDULED, BreakStatus.ACTIVE)


@dataclass(frozen=True)
class Location:
    """GPS fix supplied with an in-person completion."""

    lat: float
    lon: float
    accuracy: Optional[float] = None  # meters

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lon": self.lon, "accuracy": self.accuracy}


@dataclass(frozen=True)
class Ping:
    """One day's check-in obligation for one sender on one connection."""

    connection_id: str
    sender_id: str
    receiver_id: str
    scheduled_time: datetime
    deadline_time: datetime
    ping_date: date  # calendar day in the sender's timezone at generation
    status: PingStatus = PingStatus.PENDING
    completed_at: Optional[datetime] = None
    completion_method: Optional[CompletionMethod] = None
    verification_location: Optional[Location] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_late(self) -> bool:
        """Whether the ping was completed after its deadline.

        Lateness is never stored; it is always derived from the two instants.
        """
        if self.status != PingStatus.COMPLETED or self.completed_at is None:
            return False
        return self.completed_at > self.deadline_time

    def is_overdue(self, now: datetime) -> bool:
        """Pending with the deadline already behind us."""
        return self.status == PingStatus.PENDING and self.deadline_time < now

    def to_dict(self) -> dict:
        """Convert to a plain dict for JSON/WebSocket serialization."""
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "scheduled_time": self.scheduled_time.isoformat(),
            "deadline_time": self.deadline_time.isoformat(),
            "ping_date": self.ping_date.isoformat(),
            "status": self.status.value,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completion_method": (
                self.completion_method.value if self.completion_method else None
            ),
            "verification_location": (
                self.verification_location.to_dict()
                if self.verification_location
                else None
            ),
            "is_late": self.is_late,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Break:
    """A sender-declared range of days with no check-in obligation."""

    sender_id: str
    start_date: date
    end_date: date  # inclusive
    status: BreakStatus = BreakStatus.SCHEDULED
    notes: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def duration_days(self) -> int:
        """Number of days covered, counting both ends."""
        return (self.end_date - self.start_date).days + 1

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_BREAK_STATUSES

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def overlaps(self, start: date, end: date) -> bool:
        # [A, B] and [C, D] overlap iff A <= D and C <= B
        return self.start_date <= end and start <= self.end_date

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "status": self.status.value,
            "notes": self.notes,
            "duration_days": self.duration_days,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Connection:
    """A directed sender -> receiver pairing."""

    sender_id: str
    receiver_id: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SenderProfile:
    """Per-sender schedule: local time of day, grace period, current zone."""

    sender_id: str
    ping_time: str = "09:00"  # HH:MM[:SS] in the sender's current timezone
    grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES
    ping_enabled: bool = True
    timezone: str = "UTC"  # IANA zone last reported by the sender's device

    def to_dict(self) -> dict:
        return {
            "sender_id": self.sender_id,
            "ping_time": self.ping_time,
            "grace_period_minutes": self.grace_period_minutes,
            "ping_enabled": self.ping_enabled,
            "timezone": self.timezone,
        }
