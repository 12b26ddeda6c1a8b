"""Clock and timezone collaborators.

The engine never reads the wall clock or the host's zone directly; it asks
an injected clock so tests can pin both.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol

from checkin.lifecycle.deadline import local_date


class Clock(Protocol):
    def now(self) -> datetime:
        """Current instant, timezone-aware (UTC)."""
        ...

    async def current_timezone(self, sender_id: str) -> str:
        """IANA zone the sender is currently in."""
        ...


async def sender_today(clock: Clock, sender_id: str) -> date:
    """Today's calendar date in the sender's current timezone."""
    tz_name = await clock.current_timezone(sender_id)
    return local_date(clock.now(), tz_name)


class SystemClock:
    """Wall clock; zones come from the device-reported sender profile."""

    def __init__(self, repository, default_timezone: str = "UTC") -> None:
        self._repository = repository
        self._default_timezone = default_timezone

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def current_timezone(self, sender_id: str) -> str:
        profile = await self._repository.get_sender_profile(sender_id)
        if profile is None or not profile.timezone:
            return self._default_timezone
        return profile.timezone


class ManualClock:
    """Settable clock for tests and simulations."""

    def __init__(
        self,
        now: datetime,
        timezones: Optional[dict[str, str]] = None,
        default_timezone: str = "UTC",
    ) -> None:
        if now.tzinfo is None:
            raise ValueError("ManualClock requires an aware datetime")
        self._now = now.astimezone(timezone.utc)
        self._timezones = dict(timezones or {})
        self._default_timezone = default_timezone

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now.astimezone(timezone.utc)

    def advance(self, **kwargs: float) -> None:
        """Move the clock forward, e.g. ``advance(minutes=90)``."""
        self._now += timedelta(**kwargs)

    def set_timezone(self, sender_id: str, tz_name: str) -> None:
        self._timezones[sender_id] = tz_name

    async def current_timezone(self, sender_id: str) -> str:
        return self._timezones.get(sender_id, self._default_timezone)
