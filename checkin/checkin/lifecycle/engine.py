"""Ping lifecycle engine: generation, completion, missed sweep, break hooks.

State machine per ping::

    pending -> completed | missed | on_break
    on_break -> pending      (break canceled, deadline still ahead)

``completed`` and ``missed`` are terminal. Every transition is a single
conditional write on the status column, so a completion racing the missed
sweep is serialized by the store without any lock: whichever write lands
first wins and the other observes a status mismatch.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from checkin.clock import Clock, sender_today
from checkin.errors import (
    CheckinError,
    ConnectionNotFound,
    DuplicatePing,
    InsufficientLocationAccuracy,
    InvalidTransition,
    PingExpired,
    PingNotFound,
)
from checkin.lifecycle.breaks import BreakManager
from checkin.lifecycle.deadline import compute_window, local_date
from checkin.lifecycle.events import (
    ConnectionEvent,
    ConnectionEventKind,
    EventBus,
    PingEvent,
    PingEventKind,
)
from checkin.location import LocationVerifier
from checkin.models import (
    CompletionMethod,
    Connection,
    ConnectionStatus,
    Location,
    Ping,
    PingStatus,
)

logger = logging.getLogger(__name__)

# Skip reasons reported by generate_all
SKIP_ALREADY_EXISTS = "ping_already_exists"
SKIP_PING_DISABLED = "ping_disabled"
SKIP_NO_PROFILE = "no_sender_profile"
SKIP_CONNECTION_INACTIVE = "connection_inactive"
SKIP_DEADLINE_PASSED = "deadline_passed"
SKIP_INVALID_PROFILE = "invalid_profile"

_USER_METHODS = (CompletionMethod.TAP, CompletionMethod.IN_PERSON)

_CONNECTION_EVENTS = {
    ConnectionStatus.ACTIVE: ConnectionEventKind.ACTIVATED,
    ConnectionStatus.PAUSED: ConnectionEventKind.PAUSED,
    ConnectionStatus.DELETED: ConnectionEventKind.DELETED,
}


@dataclass(frozen=True)
class CompletionSummary:
    """Aggregate result of completing every pending ping of a sender."""

    completed_count: int = 0
    on_time_count: int = 0
    late_count: int = 0
    pings: tuple[Ping, ...] = ()

    def to_dict(self) -> dict:
        return {
            "completed_count": self.completed_count,
            "on_time_count": self.on_time_count,
            "late_count": self.late_count,
            "pings": [p.to_dict() for p in self.pings],
        }


@dataclass
class GenerationReport:
    created: list[Ping] = field(default_factory=list)
    skipped: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict:
        return {
            "created_count": len(self.created),
            "skipped": dict(self.skipped),
            "pings": [p.to_dict() for p in self.created],
        }


@dataclass(frozen=True)
class TodaysStatus:
    """Summary of a sender's pings for their current calendar day."""

    day: date
    pending: int = 0
    completed: int = 0
    missed: int = 0
    on_break: int = 0
    earliest_deadline: Optional[datetime] = None
    is_late: bool = False

    @property
    def total(self) -> int:
        return self.pending + self.completed + self.missed + self.on_break

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "pending": self.pending,
            "completed": self.completed,
            "missed": self.missed,
            "on_break": self.on_break,
            "total": self.total,
            "earliest_deadline": (
                self.earliest_deadline.isoformat() if self.earliest_deadline else None
            ),
            "is_late": self.is_late,
        }


@dataclass(frozen=True)
class PingStatistics:
    completed: int = 0
    missed: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.missed

    @property
    def completion_rate(self) -> float:
        return self.completed / self.total if self.total else 0.0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "missed": self.missed,
            "completion_rate": round(self.completion_rate, 4),
        }


class PingLifecycleEngine:
    """Owns every ping status transition.

    Args:
        repository: Persistence for pings, connections and sender profiles.
        clock: Source of "now" and the sender's current timezone.
        breaks: Break manager, consulted for on-break days.
        bus: Event channel; every transition publishes one PingEvent.
        location_verifier: Accuracy check for in-person completions.
    """

    def __init__(
        self,
        repository,
        clock: Clock,
        breaks: BreakManager,
        bus: EventBus,
        location_verifier: LocationVerifier,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._breaks = breaks
        self._bus = bus
        self._location_verifier = location_verifier

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_daily_ping(
        self,
        connection: Connection,
        day: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Ping]:
        """Create the ping for one connection and day, if one is due.

        Idempotent: a second call for the same (connection, day) returns
        None and leaves the existing row alone.
        """
        ping, _ = await self._generate(connection, day, now)
        return ping

    async def generate_all(self, now: Optional[datetime] = None) -> GenerationReport:
        """Run daily generation for every non-deleted connection."""
        now = now or self._clock.now()
        report = GenerationReport()
        connections = await self._repository.query_connections(
            statuses=[
                ConnectionStatus.PENDING,
                ConnectionStatus.ACTIVE,
                ConnectionStatus.PAUSED,
            ]
        )
        for connection in connections:
            try:
                ping, reason = await self._generate(connection, None, now)
            except CheckinError as e:
                logger.warning("Skipping connection %s: %s", connection.id, e)
                report.skipped[SKIP_INVALID_PROFILE] += 1
                continue
            if ping is not None:
                report.created.append(ping)
            else:
                report.skipped[reason] += 1

        logger.info(
            "Generation: %d created, skipped %s",
            len(report.created),
            dict(report.skipped),
        )
        return report

    async def activate_connection(self, connection: Connection) -> Optional[Ping]:
        """Mark a connection active and create its first day's ping."""
        if connection.status != ConnectionStatus.ACTIVE:
            connection = await self.set_connection_status(
                connection.id, ConnectionStatus.ACTIVE
            )
        return await self.generate_daily_ping(connection)

    async def set_connection_status(
        self, connection_id: str, status: ConnectionStatus
    ) -> Connection:
        """Change a connection's status and announce it.

        Pausing or deleting stops reminders for the connection's pending
        pings; they stay pending in the store and are left alone by the
        missed sweep.

        Raises:
            ConnectionNotFound: unknown id.
        """
        updated = await self._repository.update_connection_status(connection_id, status)
        if updated is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        logger.info("Connection %s is now %s", connection_id, status.value)
        kind = _CONNECTION_EVENTS.get(status)
        if kind is not None:
            await self._bus.publish(ConnectionEvent(kind, updated))
        return updated

    async def _generate(
        self,
        connection: Connection,
        day: Optional[date],
        now: Optional[datetime],
    ) -> tuple[Optional[Ping], Optional[str]]:
        if not connection.is_active:
            return None, SKIP_CONNECTION_INACTIVE

        profile = await self._repository.get_sender_profile(connection.sender_id)
        if profile is None:
            return None, SKIP_NO_PROFILE
        if not profile.ping_enabled:
            return None, SKIP_PING_DISABLED

        now = now or self._clock.now()
        tz_name = await self._clock.current_timezone(connection.sender_id)
        day = day or local_date(now, tz_name)

        existing = await self._repository.query_pings(
            connection_id=connection.id, ping_date=day, limit=1
        )
        if existing:
            return None, SKIP_ALREADY_EXISTS

        scheduled, deadline = compute_window(
            profile.ping_time,
            profile.grace_period_minutes,
            tz_name=tz_name,
            calendar_date=day,
        )
        on_break = await self._breaks.is_on_break(connection.sender_id, day)
        if not on_break and deadline <= now:
            return None, SKIP_DEADLINE_PASSED

        ping = Ping(
            connection_id=connection.id,
            sender_id=connection.sender_id,
            receiver_id=connection.receiver_id,
            scheduled_time=scheduled,
            deadline_time=deadline,
            ping_date=day,
            status=PingStatus.ON_BREAK if on_break else PingStatus.PENDING,
            completion_method=CompletionMethod.AUTO_BREAK if on_break else None,
        )
        try:
            ping = await self._repository.create_ping(ping)
        except DuplicatePing:
            # Lost the insert race to a concurrent generator.
            return None, SKIP_ALREADY_EXISTS

        logger.info(
            "Ping %s created for connection %s on %s (%s)",
            ping.id,
            connection.id,
            day.isoformat(),
            ping.status.value,
        )
        await self._bus.publish(PingEvent(PingEventKind.CREATED, ping))
        return ping, None

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_ping(
        self,
        ping_id: str,
        method: CompletionMethod,
        location: Optional[Location] = None,
        sender_id: Optional[str] = None,
    ) -> Ping:
        """Complete one pending ping.

        Raises:
            PingNotFound: unknown id (or not this sender's ping).
            InsufficientLocationAccuracy: in-person without a precise fix.
            PingExpired: the ping was already swept to missed.
            InvalidTransition: the ping is completed or on break.
        """
        ping = await self._repository.get_ping(ping_id)
        if ping is None or (sender_id is not None and ping.sender_id != sender_id):
            raise PingNotFound(f"Ping {ping_id} not found")

        self._check_method(method, location)
        self._check_completable(ping)

        updated = await self._repository.update_ping_status(
            ping_id,
            PingStatus.PENDING,
            PingStatus.COMPLETED,
            self._completion_fields(method, location),
        )
        if updated is None:
            current = await self._repository.get_ping(ping_id)
            self._check_completable(current or ping)
            raise InvalidTransition(f"Ping {ping_id} changed state concurrently")

        logger.info(
            "Ping %s completed via %s%s",
            ping_id,
            method.value,
            " (late)" if updated.is_late else "",
        )
        await self._bus.publish(
            PingEvent(PingEventKind.COMPLETED, updated, PingStatus.PENDING)
        )
        return updated

    async def complete_all_pending(
        self,
        sender_id: str,
        method: CompletionMethod = CompletionMethod.TAP,
        location: Optional[Location] = None,
    ) -> CompletionSummary:
        """Complete every pending ping of a sender across all connections.

        Each ping transitions on its own; a ping that was swept to missed in
        the meantime is skipped rather than failing the batch.
        """
        self._check_method(method, location)
        pending = await self._repository.query_pings(
            sender_id=sender_id, statuses=[PingStatus.PENDING]
        )
        fields = self._completion_fields(method, location)

        completed = []
        for ping in pending:
            updated = await self._repository.update_ping_status(
                ping.id, PingStatus.PENDING, PingStatus.COMPLETED, fields
            )
            if updated is None:
                logger.info("Ping %s left pending before bulk completion", ping.id)
                continue
            completed.append(updated)
            await self._bus.publish(
                PingEvent(PingEventKind.COMPLETED, updated, PingStatus.PENDING)
            )

        late = sum(1 for p in completed if p.is_late)
        logger.info(
            "Bulk completion for %s: %d completed (%d late)",
            sender_id,
            len(completed),
            late,
        )
        return CompletionSummary(
            completed_count=len(completed),
            on_time_count=len(completed) - late,
            late_count=late,
            pings=tuple(completed),
        )

    def _check_method(
        self, method: CompletionMethod, location: Optional[Location]
    ) -> None:
        if method not in _USER_METHODS:
            raise InvalidTransition(f"Completion method {method.value} is not allowed")
        if method == CompletionMethod.IN_PERSON:
            if location is None or not self._location_verifier.validate_accuracy(
                location
            ):
                raise InsufficientLocationAccuracy(
                    "In-person verification requires a more accurate location"
                )

    @staticmethod
    def _check_completable(ping: Ping) -> None:
        if ping.status == PingStatus.PENDING:
            return
        if ping.status == PingStatus.MISSED:
            raise PingExpired(f"Ping {ping.id} was already marked missed")
        raise InvalidTransition(
            f"Ping {ping.id} cannot be completed from {ping.status.value}"
        )

    def _completion_fields(
        self, method: CompletionMethod, location: Optional[Location]
    ) -> dict:
        fields: dict = {
            "completed_at": self._clock.now(),
            "completion_method": method,
        }
        if method == CompletionMethod.IN_PERSON:
            fields["verification_location"] = location
        return fields

    # ------------------------------------------------------------------
    # Missed sweep
    # ------------------------------------------------------------------

    async def sweep_missed(self, now: Optional[datetime] = None) -> list[Ping]:
        """Mark pending pings whose deadline has passed as missed.

        Pings of connections that are no longer active are left untouched.
        """
        now = now or self._clock.now()
        overdue = await self._repository.query_pings(
            statuses=[PingStatus.PENDING], deadline_before=now
        )
        if not overdue:
            return []

        connection_ids = list({p.connection_id for p in overdue})
        active = await self._repository.query_connections(
            ids=connection_ids, statuses=[ConnectionStatus.ACTIVE]
        )
        active_ids = {c.id for c in active}

        missed = []
        for ping in overdue:
            if ping.connection_id not in active_ids:
                continue
            updated = await self._repository.update_ping_status(
                ping.id, PingStatus.PENDING, PingStatus.MISSED
            )
            if updated is None:
                continue
            missed.append(updated)
            await self._bus.publish(
                PingEvent(PingEventKind.MISSED, updated, PingStatus.PENDING)
            )

        if missed:
            logger.info("Missed sweep: %d ping(s) marked missed", len(missed))
        return missed

    # ------------------------------------------------------------------
    # Break hooks
    # ------------------------------------------------------------------

    async def mark_today_on_break(self, sender_id: str) -> list[Ping]:
        """Move today's pending pings of a sender to on_break."""
        today = await sender_today(self._clock, sender_id)
        pending = await self._repository.query_pings(
            sender_id=sender_id, statuses=[PingStatus.PENDING], ping_date=today
        )
        marked = []
        for ping in pending:
            updated = await self._repository.update_ping_status(
                ping.id,
                PingStatus.PENDING,
                PingStatus.ON_BREAK,
                {"completion_method": CompletionMethod.AUTO_BREAK},
            )
            if updated is None:
                continue
            marked.append(updated)
            await self._bus.publish(
                PingEvent(PingEventKind.ON_BREAK, updated, PingStatus.PENDING)
            )
        if marked:
            logger.info("Marked %d ping(s) on break for %s", len(marked), sender_id)
        return marked

    async def revert_future_on_break_to_pending(self, sender_id: str) -> list[Ping]:
        """Restore obligations for on_break pings from today onward.

        Only rows whose deadline is still ahead are reverted, and only if no
        other open break still covers their day. Past break days stay
        on_break.
        """
        today = await sender_today(self._clock, sender_id)
        now = self._clock.now()
        on_break = await self._repository.query_pings(
            sender_id=sender_id, statuses=[PingStatus.ON_BREAK], ping_date_from=today
        )
        reverted = []
        for ping in on_break:
            if ping.deadline_time <= now:
                continue
            if await self._breaks.is_on_break(sender_id, ping.ping_date):
                continue
            updated = await self._repository.update_ping_status(
                ping.id,
                PingStatus.ON_BREAK,
                PingStatus.PENDING,
                {"completion_method": None, "completed_at": None},
            )
            if updated is None:
                continue
            reverted.append(updated)
            await self._bus.publish(
                PingEvent(PingEventKind.REVERTED, updated, PingStatus.ON_BREAK)
            )
        if reverted:
            logger.info("Reverted %d ping(s) to pending for %s", len(reverted), sender_id)
        return reverted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_ping(self, ping_id: str) -> Ping:
        ping = await self._repository.get_ping(ping_id)
        if ping is None:
            raise PingNotFound(f"Ping {ping_id} not found")
        return ping

    async def todays_status(self, sender_id: str) -> TodaysStatus:
        today = await sender_today(self._clock, sender_id)
        now = self._clock.now()
        pings = await self._repository.query_pings(sender_id=sender_id, ping_date=today)
        counts = Counter(p.status for p in pings)
        pending = [p for p in pings if p.status == PingStatus.PENDING]
        return TodaysStatus(
            day=today,
            pending=counts[PingStatus.PENDING],
            completed=counts[PingStatus.COMPLETED],
            missed=counts[PingStatus.MISSED],
            on_break=counts[PingStatus.ON_BREAK],
            earliest_deadline=min((p.deadline_time for p in pending), default=None),
            is_late=any(p.deadline_time < now for p in pending),
        )

    async def ping_history(
        self, sender_id: str, limit: int = 30, offset: int = 0
    ) -> list[Ping]:
        """Sender's pings, newest first."""
        return await self._repository.query_pings(
            sender_id=sender_id, descending=True, limit=limit, offset=offset
        )

    async def ping_statistics(self, sender_id: str) -> PingStatistics:
        resolved = await self._repository.query_pings(
            sender_id=sender_id, statuses=[PingStatus.COMPLETED, PingStatus.MISSED]
        )
        counts = Counter(p.status for p in resolved)
        return PingStatistics(
            completed=counts[PingStatus.COMPLETED],
            missed=counts[PingStatus.MISSED],
        )
