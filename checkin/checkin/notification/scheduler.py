"""Notification scheduler: derives time-anchored notifications from pings.

Sender-facing reminders are planned ahead from a ping's timeline:

- ping_due at scheduled time (gated by ping_reminders)
- deadline_warning 15 min before the deadline (fifteen_minute_warning)
- deadline_final at the deadline (deadline_warning)
- missed_alert 5 min after the deadline (always, unless notifications off)

Receiver-facing notifications are built at the moment of the transition
that causes them and are never queued.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from checkin.models import Break, Ping, new_id
from checkin.notification.preferences import NotificationPreferences

logger = logging.getLogger(__name__)

# Sender-facing categories
PING_DUE = "ping_due"
DEADLINE_WARNING = "deadline_warning"
DEADLINE_FINAL = "deadline_final"
MISSED_ALERT = "missed_alert"
PING_REMINDER = "ping_reminder"  # snoozed ping_due

# Receiver-facing categories
PING_COMPLETED_ON_TIME = "ping_completed_on_time"
PING_COMPLETED_LATE = "ping_completed_late"
MISSED_PING = "missed_ping"
BREAK_STARTED = "break_started"

WARNING_LEAD = timedelta(minutes=15)
MISSED_ALERT_DELAY = timedelta(minutes=5)

SOUND_DEFAULT = "default"
SOUND_CRITICAL = "critical"

_SENDER_MESSAGES = {
    PING_DUE: ("Time to check in", "Tap to let everyone know you're okay."),
    DEADLINE_WARNING: (
        "Check-in deadline approaching",
        "Reminder: 15 minutes until your check-in deadline.",
    ),
    DEADLINE_FINAL: (
        "Check-in deadline now",
        "Final reminder: your check-in deadline is now.",
    ),
    MISSED_ALERT: (
        "Check-in missed",
        "You missed your check-in deadline. You can still let people know you're okay.",
    ),
    PING_REMINDER: ("Check-in reminder", "Don't forget to check in today."),
}

_CRITICAL = {DEADLINE_FINAL, MISSED_ALERT}


@dataclass(frozen=True)
class ScheduledNotification:
    """One notification for one recipient at one instant."""

    fire_at: datetime
    category: str
    recipient_id: str
    payload: dict
    ping_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fire_at": self.fire_at.isoformat(),
            "category": self.category,
            "recipient_id": self.recipient_id,
            "ping_id": self.ping_id,
            "payload": self.payload,
        }


def _sound(category: str, prefs: NotificationPreferences) -> Optional[str]:
    if not prefs.sound_enabled:
        return None
    return SOUND_CRITICAL if category in _CRITICAL else SOUND_DEFAULT


def sender_notification(
    ping: Ping,
    category: str,
    fire_at: datetime,
    prefs: NotificationPreferences,
) -> ScheduledNotification:
    title, body = _SENDER_MESSAGES[category]
    return ScheduledNotification(
        fire_at=fire_at,
        category=category,
        recipient_id=ping.sender_id,
        ping_id=ping.id,
        payload={
            "title": title,
            "body": body,
            "ping_id": ping.id,
            "connection_id": ping.connection_id,
            "deadline_time": ping.deadline_time.isoformat(),
            "sound": _sound(category, prefs),
        },
    )


def plan_sender_notifications(
    ping: Ping,
    prefs: NotificationPreferences,
    now: datetime,
) -> list[ScheduledNotification]:
    """Sender reminders for a pending ping, earliest first.

    Deterministic for a given (ping, prefs, now); instants already in the
    past are dropped.
    """
    if not prefs.notifications_enabled:
        return []

    candidates = []
    if prefs.ping_reminders:
        candidates.append((PING_DUE, ping.scheduled_time))
    if prefs.fifteen_minute_warning:
        candidates.append((DEADLINE_WARNING, ping.deadline_time - WARNING_LEAD))
    if prefs.deadline_warning:
        candidates.append((DEADLINE_FINAL, ping.deadline_time))
    candidates.append((MISSED_ALERT, ping.deadline_time + MISSED_ALERT_DELAY))

    planned = [
        sender_notification(ping, category, fire_at, prefs)
        for category, fire_at in candidates
        if fire_at >= now
    ]
    planned.sort(key=lambda n: n.fire_at)
    return planned


# ----------------------------------------------------------------------
# Receiver-facing
# ----------------------------------------------------------------------


def _receiver_allows(
    prefs: NotificationPreferences, sender_id: str, toggle: bool
) -> bool:
    return prefs.notifications_enabled and toggle and not prefs.is_sender_muted(sender_id)


def _receiver_payload(title: str, body: str, prefs: NotificationPreferences, **extra) -> dict:
    payload = {
        "title": title,
        "body": body,
        "sound": SOUND_DEFAULT if prefs.sound_enabled else None,
    }
    payload.update(extra)
    return payload


def completion_notification(
    ping: Ping,
    prefs: NotificationPreferences,
    now: datetime,
    sender_name: Optional[str] = None,
) -> Optional[ScheduledNotification]:
    """Tell the receiver a ping was completed, on time or late."""
    if not _receiver_allows(prefs, ping.sender_id, prefs.ping_completed_notifications):
        return None
    name = sender_name or ping.sender_id
    completed_at = ping.completed_at.isoformat() if ping.completed_at else None
    if ping.is_late:
        category = PING_COMPLETED_LATE
        payload = _receiver_payload(
            "Late check-in received",
            f"{name} checked in late.",
            prefs,
            completed_at=completed_at,
        )
    else:
        category = PING_COMPLETED_ON_TIME
        payload = _receiver_payload(
            "Check-in received",
            f"{name} is okay!",
            prefs,
            completed_at=completed_at,
        )
    payload.update(
        ping_id=ping.id,
        sender_id=ping.sender_id,
        completion_method=ping.completion_method.value if ping.completion_method else None,
    )
    return ScheduledNotification(
        fire_at=now,
        category=category,
        recipient_id=ping.receiver_id,
        ping_id=ping.id,
        payload=payload,
    )


def missed_notification(
    ping: Ping,
    prefs: NotificationPreferences,
    now: datetime,
    last_seen: Optional[datetime] = None,
    sender_name: Optional[str] = None,
) -> Optional[ScheduledNotification]:
    """Tell the receiver a sender missed their check-in."""
    if not _receiver_allows(prefs, ping.sender_id, prefs.missed_ping_alerts):
        return None
    name = sender_name or ping.sender_id
    body = f"{name} missed their check-in."
    if last_seen is not None:
        body += f" Last seen {last_seen.isoformat()}."
    payload = _receiver_payload(
        "Missed check-in alert",
        body,
        prefs,
        ping_id=ping.id,
        sender_id=ping.sender_id,
        deadline_time=ping.deadline_time.isoformat(),
        last_seen=last_seen.isoformat() if last_seen else None,
    )
    payload["sound"] = SOUND_CRITICAL if prefs.sound_enabled else None
    return ScheduledNotification(
        fire_at=now,
        category=MISSED_PING,
        recipient_id=ping.receiver_id,
        ping_id=ping.id,
        payload=payload,
    )


def break_started_notification(
    brk: Break,
    receiver_id: str,
    prefs: NotificationPreferences,
    now: datetime,
    sender_name: Optional[str] = None,
) -> Optional[ScheduledNotification]:
    """Tell a receiver that a sender's break has begun."""
    if not _receiver_allows(prefs, brk.sender_id, prefs.break_notifications):
        return None
    name = sender_name or brk.sender_id
    return ScheduledNotification(
        fire_at=now,
        category=BREAK_STARTED,
        recipient_id=receiver_id,
        payload=_receiver_payload(
            "Break started",
            f"{name} is on break until {brk.end_date.isoformat()}.",
            prefs,
            break_id=brk.id,
            sender_id=brk.sender_id,
            start_date=brk.start_date.isoformat(),
            end_date=brk.end_date.isoformat(),
        ),
    )


# ----------------------------------------------------------------------
# Queue
# ----------------------------------------------------------------------


class NotificationQueue:
    """Not-yet-fired notifications, cancelable per ping.

    A (ping, category, instant) triple is queued at most once, so planning
    the same ping twice does not double-schedule.
    """

    def __init__(self) -> None:
        self._items: dict[str, ScheduledNotification] = {}
        self._keys: dict[tuple, str] = {}

    def __len__(self) -> int:
        return len(self._items)

    @staticmethod
    def _key(n: ScheduledNotification) -> tuple:
        return (n.ping_id, n.recipient_id, n.category, n.fire_at)

    def add(self, notification: ScheduledNotification) -> bool:
        key = self._key(notification)
        if key in self._keys:
            return False
        self._keys[key] = notification.id
        self._items[notification.id] = notification
        return True

    def extend(self, notifications: list[ScheduledNotification]) -> int:
        return sum(1 for n in notifications if self.add(n))

    def _remove(self, notification_id: str) -> None:
        n = self._items.pop(notification_id, None)
        if n is not None:
            self._keys.pop(self._key(n), None)

    def cancel_for_ping(self, ping_id: str, keep: tuple[str, ...] = ()) -> int:
        """Drop queued notifications of a ping, except categories in keep."""
        doomed = [
            n.id
            for n in self._items.values()
            if n.ping_id == ping_id and n.category not in keep
        ]
        for notification_id in doomed:
            self._remove(notification_id)
        if doomed:
            logger.debug("Canceled %d notification(s) for ping %s", len(doomed), ping_id)
        return len(doomed)

    def cancel_for_recipient(self, recipient_id: str) -> list[ScheduledNotification]:
        """Drop and return everything queued for one recipient."""
        doomed = [n for n in self._items.values() if n.recipient_id == recipient_id]
        for n in doomed:
            self._remove(n.id)
        return doomed

    def pop_due(self, now: datetime) -> list[ScheduledNotification]:
        """Remove and return everything due at or before now, in order."""
        due = sorted(
            (n for n in self._items.values() if n.fire_at <= now),
            key=lambda n: n.fire_at,
        )
        for n in due:
            self._remove(n.id)
        return due

    def pending(self, ping_id: Optional[str] = None) -> list[ScheduledNotification]:
        items = [
            n for n in self._items.values() if ping_id is None or n.ping_id == ping_id
        ]
        return sorted(items, key=lambda n: n.fire_at)
