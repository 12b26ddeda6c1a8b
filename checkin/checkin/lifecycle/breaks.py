"""Break manager: validates, persists and advances sender breaks.

A break suspends ping obligations over an inclusive range of calendar days.
Break rows and ping rows are separate entities with no shared transaction;
they are reconciled through two idempotent lifecycle hooks
(``mark_today_on_break`` and ``revert_future_on_break_to_pending``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from checkin.clock import Clock, sender_today
from checkin.errors import (
    BreakNotFound,
    InvalidDateRange,
    InvalidTransition,
    OverlappingBreak,
)
from checkin.lifecycle.events import BreakEvent, BreakEventKind, EventBus
from checkin.models import OPEN_BREAK_STATUSES, Break, BreakStatus, Ping

logger = logging.getLogger(__name__)

LONG_BREAK_DAYS = 365


class LifecycleHooks(Protocol):
    """The only ping mutations a break change may trigger."""

    async def mark_today_on_break(self, sender_id: str) -> list[Ping]:
        ...

    async def revert_future_on_break_to_pending(self, sender_id: str) -> list[Ping]:
        ...


@dataclass(frozen=True)
class LongBreakWarning:
    """Non-fatal signal returned with an unusually long break."""

    duration_days: int
    message: str

    def to_dict(self) -> dict:
        return {"duration_days": self.duration_days, "message": self.message}


@dataclass(frozen=True)
class BreakScheduleResult:
    brk: Break
    warning: Optional[LongBreakWarning] = None


def validate_break_dates(
    start_date: date, end_date: date, today: date
) -> Optional[LongBreakWarning]:
    """Check a proposed break range.

    Returns:
        A LongBreakWarning if the range spans more than a year, else None.

    Raises:
        InvalidDateRange: if the break starts in the past or ends before it
            starts.
    """
    if start_date < today:
        raise InvalidDateRange(
            f"Break cannot start in the past ({start_date.isoformat()} < "
            f"{today.isoformat()})"
        )
    if end_date < start_date:
        raise InvalidDateRange(
            f"Break end {end_date.isoformat()} is before start "
            f"{start_date.isoformat()}"
        )
    span = (end_date - start_date).days
    if span > LONG_BREAK_DAYS:
        return LongBreakWarning(
            duration_days=span + 1,
            message=(
                f"This break lasts {span + 1} days. Breaks longer than a year "
                "are allowed but unusual."
            ),
        )
    return None


class BreakManager:
    """Owns break rows and fires the lifecycle hooks on start and cancel.

    Args:
        repository: Persistence for breaks.
        clock: Source of "now" and the sender's current timezone.
        bus: Event channel for break events.
        lifecycle: Ping mutation hooks; may be bound later with
            ``bind_lifecycle`` because the engine itself depends on
            ``is_on_break``.
    """

    def __init__(
        self,
        repository,
        clock: Clock,
        bus: EventBus,
        lifecycle: Optional[LifecycleHooks] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._bus = bus
        self._lifecycle = lifecycle

    def bind_lifecycle(self, lifecycle: LifecycleHooks) -> None:
        self._lifecycle = lifecycle

    @property
    def lifecycle(self) -> LifecycleHooks:
        if self._lifecycle is None:
            raise RuntimeError("BreakManager has no lifecycle hooks bound")
        return self._lifecycle

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def schedule_break(
        self,
        sender_id: str,
        start_date: date,
        end_date: date,
        notes: Optional[str] = None,
    ) -> BreakScheduleResult:
        """Create a break, starting it at once if it begins today.

        Raises:
            InvalidDateRange: start in the past or end before start.
            OverlappingBreak: an open break already covers part of the range.
        """
        today = await sender_today(self._clock, sender_id)
        warning = validate_break_dates(start_date, end_date, today)

        clashes = await self._repository.query_breaks(
            sender_id=sender_id,
            statuses=OPEN_BREAK_STATUSES,
            overlapping=(start_date, end_date),
            limit=1,
        )
        if clashes:
            existing = clashes[0]
            raise OverlappingBreak(
                f"Break overlaps existing {existing.status.value} break "
                f"{existing.start_date.isoformat()}..{existing.end_date.isoformat()}"
            )

        starts_now = start_date <= today
        brk = Break(
            sender_id=sender_id,
            start_date=start_date,
            end_date=end_date,
            status=BreakStatus.ACTIVE if starts_now else BreakStatus.SCHEDULED,
            notes=notes,
        )
        brk = await self._repository.create_break(brk)
        logger.info(
            "Break %s scheduled for %s: %s..%s (%s)",
            brk.id,
            sender_id,
            start_date.isoformat(),
            end_date.isoformat(),
            brk.status.value,
        )
        if warning is not None:
            logger.info("Long break for %s: %d days", sender_id, warning.duration_days)

        await self._bus.publish(BreakEvent(BreakEventKind.SCHEDULED, brk))
        if starts_now:
            await self.lifecycle.mark_today_on_break(sender_id)
            await self._bus.publish(BreakEvent(BreakEventKind.STARTED, brk))

        return BreakScheduleResult(brk=brk, warning=warning)

    async def cancel_break(self, break_id: str, sender_id: str) -> Break:
        """Cancel a break and restore any future obligations it suspended.

        Canceling an already-canceled break re-runs the revert and returns.

        Raises:
            BreakNotFound: unknown id or another sender's break.
            InvalidTransition: the break already ran to completion.
        """
        brk = await self._get_owned(break_id, sender_id)

        if brk.status == BreakStatus.COMPLETED:
            raise InvalidTransition(f"Break {break_id} is already completed")

        if brk.status != BreakStatus.CANCELED:
            brk = await self._repository.update_break(
                break_id, status=BreakStatus.CANCELED
            )
            logger.info("Break %s canceled by %s", break_id, sender_id)

        await self.lifecycle.revert_future_on_break_to_pending(sender_id)
        await self._bus.publish(BreakEvent(BreakEventKind.CANCELED, brk))
        return brk

    async def end_break_early(self, break_id: str, sender_id: str) -> Break:
        """Stop a running break today; earlier break days stay on break.

        A break that has not started yet is simply canceled.

        Raises:
            BreakNotFound: unknown id or another sender's break.
            InvalidTransition: the break already ran to completion.
        """
        brk = await self._get_owned(break_id, sender_id)
        today = await sender_today(self._clock, sender_id)

        if brk.status == BreakStatus.COMPLETED:
            raise InvalidTransition(f"Break {break_id} is already completed")
        if brk.status == BreakStatus.CANCELED or brk.start_date > today:
            return await self.cancel_break(break_id, sender_id)

        end_date = min(brk.end_date, today)
        brk = await self._repository.update_break(
            break_id, status=BreakStatus.CANCELED, end_date=end_date
        )
        logger.info("Break %s ended early by %s on %s", break_id, sender_id, today)

        await self.lifecycle.revert_future_on_break_to_pending(sender_id)
        await self._bus.publish(BreakEvent(BreakEventKind.CANCELED, brk))
        return brk

    async def advance_break_statuses(self) -> dict[str, int]:
        """Start breaks whose first day has arrived and finish elapsed ones.

        Safe to run repeatedly: a second run over the same state changes
        nothing.

        Returns:
            Counts of breaks ``started`` and ``completed``.
        """
        open_breaks = await self._repository.query_breaks(statuses=OPEN_BREAK_STATUSES)
        todays: dict[str, date] = {}
        started = completed = 0

        for brk in open_breaks:
            if brk.sender_id not in todays:
                todays[brk.sender_id] = await sender_today(self._clock, brk.sender_id)
            today = todays[brk.sender_id]

            if brk.end_date < today:
                updated = await self._repository.update_break(
                    brk.id, status=BreakStatus.COMPLETED
                )
                completed += 1
                await self._bus.publish(BreakEvent(BreakEventKind.COMPLETED, updated))
            elif brk.status == BreakStatus.SCHEDULED and brk.start_date <= today:
                updated = await self._repository.update_break(
                    brk.id, status=BreakStatus.ACTIVE
                )
                started += 1
                await self.lifecycle.mark_today_on_break(brk.sender_id)
                await self._bus.publish(BreakEvent(BreakEventKind.STARTED, updated))

        if started or completed:
            logger.info("Break sweep: %d started, %d completed", started, completed)
        return {"started": started, "completed": completed}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def is_on_break(self, sender_id: str, day: date) -> bool:
        """Whether an open break of this sender covers the given day."""
        covering = await self._repository.query_breaks(
            sender_id=sender_id,
            statuses=OPEN_BREAK_STATUSES,
            covering=day,
            limit=1,
        )
        return bool(covering)

    async def active_break(self, sender_id: str) -> Optional[Break]:
        rows = await self._repository.query_breaks(
            sender_id=sender_id, statuses=[BreakStatus.ACTIVE], limit=1
        )
        return rows[0] if rows else None

    async def scheduled_breaks(self, sender_id: str) -> list[Break]:
        """Upcoming breaks, soonest first."""
        today = await sender_today(self._clock, sender_id)
        return await self._repository.query_breaks(
            sender_id=sender_id,
            statuses=[BreakStatus.SCHEDULED],
            start_after=today,
        )

    async def break_history(self, sender_id: str, limit: int = 20) -> list[Break]:
        """Finished breaks (completed or canceled), newest first."""
        return await self._repository.query_breaks(
            sender_id=sender_id,
            statuses=[BreakStatus.COMPLETED, BreakStatus.CANCELED],
            descending=True,
            limit=limit,
        )

    async def _get_owned(self, break_id: str, sender_id: str) -> Break:
        brk = await self._repository.get_break(break_id)
        if brk is None or brk.sender_id != sender_id:
            raise BreakNotFound(f"Break {break_id} not found")
        return brk
