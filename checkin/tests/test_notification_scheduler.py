"""Tests for notification planning, receiver builders and the queue."""

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

from checkin.models import Break, CompletionMethod, Ping, PingStatus
from checkin.notification.preferences import NotificationPreferences
from checkin.notification.scheduler import (
    BREAK_STARTED,
    DEADLINE_FINAL,
    DEADLINE_WARNING,
    MISSED_ALERT,
    MISSED_PING,
    PING_COMPLETED_LATE,
    PING_COMPLETED_ON_TIME,
    PING_DUE,
    NotificationQueue,
    break_started_notification,
    completion_notification,
    missed_notification,
    plan_sender_notifications,
)


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 10, hour, minute, tzinfo=timezone.utc)


PING = Ping(
    connection_id="c1",
    sender_id="alice",
    receiver_id="bob",
    scheduled_time=_at(9),
    deadline_time=_at(10, 30),
    ping_date=date(2026, 3, 10),
)
DEFAULTS = NotificationPreferences()


def _completed(at: datetime) -> Ping:
    return replace(
        PING,
        status=PingStatus.COMPLETED,
        completed_at=at,
        completion_method=CompletionMethod.TAP,
    )


class TestSenderPlan:
    def test_full_timeline(self):
        planned = plan_sender_notifications(PING, DEFAULTS, _at(8))
        assert [(n.category, n.fire_at) for n in planned] == [
            (PING_DUE, _at(9)),
            (DEADLINE_WARNING, _at(10, 15)),
            (DEADLINE_FINAL, _at(10, 30)),
            (MISSED_ALERT, _at(10, 35)),
        ]
        assert all(n.recipient_id == "alice" for n in planned)
        assert all(n.ping_id == PING.id for n in planned)

    def test_deterministic(self):
        first = plan_sender_notifications(PING, DEFAULTS, _at(8))
        second = plan_sender_notifications(PING, DEFAULTS, _at(8))
        assert [(n.category, n.fire_at, n.payload) for n in first] == [
            (n.category, n.fire_at, n.payload) for n in second
        ]

    def test_past_instants_dropped(self):
        planned = plan_sender_notifications(PING, DEFAULTS, _at(10, 20))
        assert [n.category for n in planned] == [DEADLINE_FINAL, MISSED_ALERT]

    def test_toggles_gate_reminders_but_not_missed_alert(self):
        prefs = NotificationPreferences(
            ping_reminders=False, fifteen_minute_warning=False, deadline_warning=False
        )
        planned = plan_sender_notifications(PING, prefs, _at(8))
        assert [n.category for n in planned] == [MISSED_ALERT]

    def test_master_toggle_suppresses_everything(self):
        prefs = NotificationPreferences(notifications_enabled=False)
        assert plan_sender_notifications(PING, prefs, _at(8)) == []

    def test_sounds(self):
        planned = plan_sender_notifications(PING, DEFAULTS, _at(8))
        sounds = {n.category: n.payload["sound"] for n in planned}
        assert sounds == {
            PING_DUE: "default",
            DEADLINE_WARNING: "default",
            DEADLINE_FINAL: "critical",
            MISSED_ALERT: "critical",
        }

        quiet = plan_sender_notifications(
            PING, NotificationPreferences(sound_enabled=False), _at(8)
        )
        assert all(n.payload["sound"] is None for n in quiet)


class TestReceiverNotifications:
    def test_on_time_completion(self):
        n = completion_notification(_completed(_at(9, 10)), DEFAULTS, _at(9, 10))
        assert n.category == PING_COMPLETED_ON_TIME
        assert n.recipient_id == "bob"
        assert n.fire_at == _at(9, 10)

    def test_late_completion_carries_completed_at(self):
        n = completion_notification(_completed(_at(10, 45)), DEFAULTS, _at(10, 45))
        assert n.category == PING_COMPLETED_LATE
        assert n.payload["completed_at"] == _at(10, 45).isoformat()

    def test_missed_includes_last_seen(self):
        last_seen = _at(9) - timedelta(days=1)
        n = missed_notification(PING, DEFAULTS, _at(10, 31), last_seen=last_seen)
        assert n.category == MISSED_PING
        assert n.payload["last_seen"] == last_seen.isoformat()
        assert n.payload["sound"] == "critical"

    def test_break_started(self):
        brk = Break(sender_id="alice", start_date=date(2026, 3, 10), end_date=date(2026, 3, 12))
        n = break_started_notification(brk, "bob", DEFAULTS, _at(8))
        assert n.category == BREAK_STARTED
        assert n.payload["end_date"] == "2026-03-12"

    def test_muted_sender_suppresses_all(self):
        prefs = DEFAULTS.mute_sender("alice")
        brk = Break(sender_id="alice", start_date=date(2026, 3, 10), end_date=date(2026, 3, 12))
        assert completion_notification(_completed(_at(9)), prefs, _at(9)) is None
        assert missed_notification(PING, prefs, _at(10, 31)) is None
        assert break_started_notification(brk, "bob", prefs, _at(8)) is None

    def test_category_toggles(self):
        assert (
            completion_notification(
                _completed(_at(9)),
                NotificationPreferences(ping_completed_notifications=False),
                _at(9),
            )
            is None
        )
        assert (
            missed_notification(
                PING, NotificationPreferences(missed_ping_alerts=False), _at(10, 31)
            )
            is None
        )
        assert (
            missed_notification(
                PING, NotificationPreferences(notifications_enabled=False), _at(10, 31)
            )
            is None
        )

    def test_unmute(self):
        prefs = DEFAULTS.mute_sender("alice").mute_sender("alice")
        assert prefs.muted_sender_ids == ("alice",)
        assert not prefs.unmute_sender("alice").is_sender_muted("alice")


class TestQueue:
    def test_same_plan_queued_once(self):
        queue = NotificationQueue()
        assert queue.extend(plan_sender_notifications(PING, DEFAULTS, _at(8))) == 4
        assert queue.extend(plan_sender_notifications(PING, DEFAULTS, _at(8))) == 0
        assert len(queue) == 4

    def test_pop_due_in_order(self):
        queue = NotificationQueue()
        queue.extend(plan_sender_notifications(PING, DEFAULTS, _at(8)))
        due = queue.pop_due(_at(10, 20))
        assert [n.category for n in due] == [PING_DUE, DEADLINE_WARNING]
        assert len(queue) == 2
        assert queue.pop_due(_at(10, 20)) == []

    def test_cancel_for_ping(self):
        other = replace(PING, id="other")
        queue = NotificationQueue()
        queue.extend(plan_sender_notifications(PING, DEFAULTS, _at(8)))
        queue.extend(plan_sender_notifications(other, DEFAULTS, _at(8)))

        assert queue.cancel_for_ping(PING.id, keep=(MISSED_ALERT,)) == 3
        assert [n.category for n in queue.pending(PING.id)] == [MISSED_ALERT]
        assert len(queue.pending("other")) == 4
