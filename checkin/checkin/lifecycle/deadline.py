"""Deadline calculator: local time-of-day + grace period -> concrete instants.

"09:00" always means 09:00 wherever the sender currently is, so the window
is recomputed for each calendar day against the sender's *current* zone.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from checkin.errors import InvalidConfiguration

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_MINUTES = 90


def parse_time_of_day(value: str | time) -> time:
    """Parse "HH:MM" or "HH:MM:SS" into a ``datetime.time``.

    Raises:
        InvalidConfiguration: if the value is not a valid 24-hour time.
    """
    if isinstance(value, time):
        return value
    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        raise InvalidConfiguration(f"Invalid time of day: {value!r}")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        raise InvalidConfiguration(f"Invalid time of day: {value!r}") from None
    hours, minutes = numbers[0], numbers[1]
    seconds = numbers[2] if len(numbers) == 3 else 0
    if not (0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60):
        raise InvalidConfiguration(f"Invalid time of day: {value!r}")
    return time(hours, minutes, seconds)


def resolve_timezone(name: str) -> ZoneInfo:
    """Look up an IANA zone, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning("Unknown timezone %r, falling back to UTC.", name)
        return ZoneInfo("UTC")


def validate_timezone(name: str) -> str:
    """Return the name if it is a known IANA zone.

    Raises:
        InvalidConfiguration: for an unknown or malformed zone name.
    """
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidConfiguration(f"Unknown timezone: {name!r}") from None
    return name


def local_date(instant: datetime, tz_name: str) -> date:
    """Calendar date of an instant as seen in the given zone."""
    return instant.astimezone(resolve_timezone(tz_name)).date()


def compute_window(
    scheduled_time_of_day: str | time,
    grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
    *,
    tz_name: str,
    calendar_date: date,
) -> tuple[datetime, datetime]:
    """Compute the (scheduled, deadline) instants for one calendar day.

    Args:
        scheduled_time_of_day: Local time the check-in is due ("HH:MM").
        grace_period_minutes: Minutes between scheduled time and deadline,
            90 unless the sender configured otherwise.
        tz_name: IANA zone the time of day is interpreted in.
        calendar_date: Day in that zone.

    Returns:
        Tuple of UTC-aware datetimes (scheduled_instant, deadline_instant).

    Raises:
        InvalidConfiguration: on a malformed time of day or a non-positive
            grace period.
    """
    tod = parse_time_of_day(scheduled_time_of_day)
    if grace_period_minutes <= 0:
        raise InvalidConfiguration(
            f"Grace period must be positive, got {grace_period_minutes}"
        )

    tz = resolve_timezone(tz_name)
    local = datetime.combine(calendar_date, tod, tzinfo=tz)
    scheduled = local.astimezone(timezone.utc)
    deadline = scheduled + timedelta(minutes=grace_period_minutes)
    return scheduled, deadline
