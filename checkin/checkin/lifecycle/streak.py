"""Streak calculator: consecutive counted days walking back from today.

Break days count like completed days, late completions count fully, and
only an unrecovered miss (or a gap once counting has begun) ends a streak.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable, Optional

from checkin.clock import Clock, sender_today
from checkin.models import Ping, PingStatus

MAX_LOOKBACK_DAYS = 730

# Higher wins when several pings share a calendar day.
_PRIORITY = {
    PingStatus.COMPLETED: 3,
    PingStatus.ON_BREAK: 2,
    PingStatus.PENDING: 1,
    PingStatus.MISSED: 0,
}
_COUNTED = (PingStatus.COMPLETED, PingStatus.ON_BREAK)


def collapse_by_day(pings: Iterable[Ping]) -> dict[date, PingStatus]:
    """One status per calendar day: completed > on_break > pending > missed."""
    days: dict[date, PingStatus] = {}
    for ping in pings:
        current = days.get(ping.ping_date)
        if current is None or _PRIORITY[ping.status] > _PRIORITY[current]:
            days[ping.ping_date] = ping.status
    return days


def compute_streak(
    day_statuses: dict[date, PingStatus],
    today: date,
    lookback_days: int = MAX_LOOKBACK_DAYS,
) -> int:
    """Walk backward from today over collapsed day statuses.

    Today only adds to the streak once it is completed or on break; a
    pending today neither counts nor breaks. Before counting starts, empty
    days are skipped. After that, an empty or unresolved day ends the walk.
    """
    today_status = day_statuses.get(today)
    if today_status == PingStatus.MISSED:
        return 0

    streak = 0
    started = False
    if today_status in _COUNTED:
        streak = 1
        started = True

    earliest = today - timedelta(days=lookback_days)
    oldest_recorded = min(day_statuses, default=today)
    day = today - timedelta(days=1)

    while day >= earliest:
        if not started and day < oldest_recorded:
            break
        status = day_statuses.get(day)
        if status in _COUNTED:
            streak += 1
            started = True
        elif status == PingStatus.MISSED:
            break
        elif started:
            # No ping, or one still pending
            break
        day -= timedelta(days=1)

    return streak


class StreakCalculator:
    """Computes a sender's current streak on demand; nothing is persisted."""

    def __init__(self, repository, clock: Clock) -> None:
        self._repository = repository
        self._clock = clock

    async def current_streak(
        self, sender_id: str, receiver_id: Optional[str] = None
    ) -> int:
        today = await sender_today(self._clock, sender_id)
        pings = await self._repository.query_pings(
            sender_id=sender_id,
            receiver_id=receiver_id,
            ping_date_from=today - timedelta(days=MAX_LOOKBACK_DAYS),
            descending=True,
        )
        return compute_streak(collapse_by_day(pings), today)
