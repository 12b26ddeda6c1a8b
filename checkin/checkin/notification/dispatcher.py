"""Notification dispatcher: turns lifecycle events into notifications.

Subscribes to the event bus. Sender reminders are planned into a queue when
a ping becomes pending and canceled when it leaves pending or its
connection stops being active. Receiver notifications are handed to the
transport in background tasks so a slow transport never holds up a state
transition. Delivery and logging are best-effort: failures are logged and
never reach the lifecycle engine.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from checkin.clock import Clock
from checkin.errors import InvalidTransition, PingExpired, PingNotFound
from checkin.lifecycle.events import (
    BreakEvent,
    BreakEventKind,
    ConnectionEvent,
    ConnectionEventKind,
    Event,
    PingEvent,
    PingEventKind,
)
from checkin.models import ConnectionStatus, Ping, PingStatus
from checkin.notification.preferences import StorePreferences
from checkin.notification.scheduler import (
    MISSED_ALERT,
    PING_REMINDER,
    NotificationQueue,
    ScheduledNotification,
    break_started_notification,
    completion_notification,
    missed_notification,
    plan_sender_notifications,
    sender_notification,
)
from checkin.notification.transport import LoggingTransport, NotificationTransport

logger = logging.getLogger(__name__)

# Queued one-offs that plan_sender_notifications does not recreate
_UNPLANNED = (PING_REMINDER, MISSED_ALERT)


class NotificationDispatcher:
    """Plans, queues and delivers notifications for lifecycle events.

    Args:
        repository: Used for pings, connections and the notification log.
        clock: Source of "now".
        preferences: Provider with ``async get(user_id)``.
        transport: Delivery backend.
        snooze_minutes: Delay of a snoozed reminder.
    """

    def __init__(
        self,
        repository,
        clock: Clock,
        preferences: Optional[StorePreferences] = None,
        transport: Optional[NotificationTransport] = None,
        snooze_minutes: int = 10,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._preferences = preferences or StorePreferences(repository)
        self._transport = transport or LoggingTransport()
        self.snooze_minutes = snooze_minutes
        self.queue = NotificationQueue()
        self._deliveries: set[asyncio.Task] = set()

    def set_transport(self, transport: NotificationTransport) -> None:
        self._transport = transport

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle(self, event: Event) -> None:
        """Event bus subscriber."""
        if isinstance(event, PingEvent):
            await self._on_ping_event(event)
        elif isinstance(event, ConnectionEvent):
            await self._on_connection_event(event)
        elif isinstance(event, BreakEvent) and event.kind == BreakEventKind.STARTED:
            await self._on_break_started(event)

    async def _on_ping_event(self, event: PingEvent) -> None:
        ping = event.ping
        if ping.status == PingStatus.PENDING:
            if event.kind in (PingEventKind.CREATED, PingEventKind.REVERTED):
                await self.schedule_for_ping(ping)
            return

        if ping.status == PingStatus.MISSED:
            # The missed alert belongs to the missed state and stays queued.
            self.queue.cancel_for_ping(ping.id, keep=(MISSED_ALERT,))
        else:
            self.queue.cancel_for_ping(ping.id)

        if event.kind == PingEventKind.COMPLETED:
            await self._notify_completion(ping)
        elif event.kind == PingEventKind.MISSED:
            await self._notify_missed(ping)

    async def _on_connection_event(self, event: ConnectionEvent) -> None:
        connection = event.connection
        pending = await self._repository.query_pings(
            connection_id=connection.id, statuses=[PingStatus.PENDING]
        )
        if event.kind == ConnectionEventKind.ACTIVATED:
            for ping in pending:
                await self.schedule_for_ping(ping)
            return

        canceled = sum(self.queue.cancel_for_ping(p.id) for p in pending)
        if canceled:
            logger.info(
                "Connection %s %s: canceled %d reminder(s)",
                connection.id,
                connection.status.value,
                canceled,
            )

    async def schedule_for_ping(self, ping: Ping) -> int:
        """Queue the sender reminders for a pending ping."""
        prefs = await self._preferences.get(ping.sender_id)
        planned = plan_sender_notifications(ping, prefs, self._clock.now())
        added = self.queue.extend(planned)
        logger.debug("Queued %d reminder(s) for ping %s", added, ping.id)
        return added

    async def _notify_completion(self, ping: Ping) -> None:
        prefs = await self._preferences.get(ping.receiver_id)
        notification = completion_notification(ping, prefs, self._clock.now())
        if notification is not None:
            self._deliver_in_background(notification)

    async def _notify_missed(self, ping: Ping) -> None:
        prefs = await self._preferences.get(ping.receiver_id)
        last_seen = await self._last_seen(ping.sender_id)
        notification = missed_notification(
            ping, prefs, self._clock.now(), last_seen=last_seen
        )
        if notification is not None:
            self._deliver_in_background(notification)

    async def _on_break_started(self, event: BreakEvent) -> None:
        brk = event.brk
        connections = await self._repository.query_connections(
            sender_id=brk.sender_id, statuses=[ConnectionStatus.ACTIVE]
        )
        now = self._clock.now()
        for receiver_id in sorted({c.receiver_id for c in connections}):
            prefs = await self._preferences.get(receiver_id)
            notification = break_started_notification(brk, receiver_id, prefs, now)
            if notification is not None:
                self._deliver_in_background(notification)

    async def _last_seen(self, sender_id: str) -> Optional[datetime]:
        recent = await self._repository.query_pings(
            sender_id=sender_id,
            statuses=[PingStatus.COMPLETED],
            descending=True,
            limit=10,
        )
        return max((p.completed_at for p in recent if p.completed_at), default=None)

    async def _pending_on_active(self, **filters) -> list[Ping]:
        """Pending pings matching filters whose connection is active."""
        pending = await self._repository.query_pings(
            statuses=[PingStatus.PENDING], **filters
        )
        if not pending:
            return []
        active = await self._repository.query_connections(
            ids=list({p.connection_id for p in pending}),
            statuses=[ConnectionStatus.ACTIVE],
        )
        active_ids = {c.id for c in active}
        return [p for p in pending if p.connection_id in active_ids]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(self, notification: ScheduledNotification) -> bool:
        """Hand a notification to the transport and record it."""
        delivered = False
        try:
            delivered = await self._transport.send(notification)
        except Exception:
            logger.exception("Delivery failed for notification %s", notification.id)

        try:
            await self._repository.log_notification(
                notification.recipient_id,
                notification.category,
                notification.fire_at,
                {**notification.payload, "delivered": delivered},
            )
        except Exception:
            logger.exception("Could not log notification %s", notification.id)
        return delivered

    def _deliver_in_background(self, notification: ScheduledNotification) -> None:
        task = asyncio.create_task(self.deliver(notification))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background delivery failed", exc_info=exc)

    @property
    def in_flight(self) -> int:
        """Receiver deliveries still running in the background."""
        return len(self._deliveries)

    async def drain(self) -> None:
        """Wait until every background delivery has finished."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def dispatch_due(self, now: Optional[datetime] = None) -> int:
        """Deliver every queued notification whose instant has arrived."""
        due = self.queue.pop_due(now or self._clock.now())
        for notification in due:
            await self.deliver(notification)
        return len(due)

    async def reschedule_pending(self) -> int:
        """Rebuild the queue from the store, e.g. after a restart."""
        pending = await self._pending_on_active()
        total = 0
        for ping in pending:
            total += await self.schedule_for_ping(ping)
        if total:
            logger.info("Rescheduled %d reminder(s) for %d pending ping(s)", total, len(pending))
        return total

    async def reschedule_for_sender(self, sender_id: str) -> int:
        """Re-plan a sender's queued reminders against their current preferences.

        Called after the sender's preferences change. Snoozed reminders and
        missed alerts already in the queue are kept only while the master
        toggle is on.
        """
        dropped = self.queue.cancel_for_recipient(sender_id)
        pending = await self._pending_on_active(sender_id=sender_id)
        total = 0
        for ping in pending:
            total += await self.schedule_for_ping(ping)

        prefs = await self._preferences.get(sender_id)
        if prefs.notifications_enabled:
            pending_ids = {p.id for p in pending}
            for n in dropped:
                if n.category not in _UNPLANNED or n.ping_id is None:
                    continue
                if n.category == PING_REMINDER and n.ping_id not in pending_ids:
                    continue
                ping = await self._repository.get_ping(n.ping_id)
                if ping is None:
                    continue
                restored = sender_notification(ping, n.category, n.fire_at, prefs)
                if self.queue.add(restored):
                    total += 1

        logger.info(
            "Rescheduled reminders for %s: %d dropped, %d queued",
            sender_id,
            len(dropped),
            total,
        )
        return total

    # ------------------------------------------------------------------
    # Snooze
    # ------------------------------------------------------------------

    async def snooze(
        self, ping_id: str, sender_id: Optional[str] = None
    ) -> Optional[ScheduledNotification]:
        """Queue a one-off reminder ``snooze_minutes`` from now.

        Returns None, queueing nothing, when the sender has turned
        notifications off.

        Raises:
            PingNotFound: unknown id (or not this sender's ping).
            PingExpired: the ping was already marked missed.
            InvalidTransition: the ping is no longer pending.
        """
        ping = await self._repository.get_ping(ping_id)
        if ping is None or (sender_id is not None and ping.sender_id != sender_id):
            raise PingNotFound(f"Ping {ping_id} not found")
        if ping.status == PingStatus.MISSED:
            raise PingExpired(f"Ping {ping_id} was already marked missed")
        if ping.status != PingStatus.PENDING:
            raise InvalidTransition(f"Ping {ping_id} is {ping.status.value}")

        prefs = await self._preferences.get(ping.sender_id)
        if not prefs.notifications_enabled:
            logger.info("Snooze of ping %s ignored: notifications are off", ping_id)
            return None

        fire_at = self._clock.now() + timedelta(minutes=self.snooze_minutes)
        notification = sender_notification(ping, PING_REMINDER, fire_at, prefs)
        self.queue.add(notification)
        logger.info("Ping %s snoozed until %s", ping_id, fire_at.isoformat())
        return notification
