"""Tests for BreakManager: validation, start/cancel hooks, status sweep."""

from datetime import date, timedelta

import pytest

from conftest import TODAY
from checkin.errors import (
    BreakNotFound,
    InvalidDateRange,
    InvalidTransition,
    OverlappingBreak,
)
from checkin.lifecycle.breaks import validate_break_dates
from checkin.models import BreakStatus, CompletionMethod, PingStatus


def _day(n: int) -> date:
    return TODAY + timedelta(days=n)


class TestValidation:
    def test_past_start_rejected(self):
        with pytest.raises(InvalidDateRange):
            validate_break_dates(_day(-1), _day(2), TODAY)

    def test_end_before_start_rejected(self):
        with pytest.raises(InvalidDateRange):
            validate_break_dates(_day(5), _day(4), TODAY)

    def test_one_year_is_not_long(self):
        assert validate_break_dates(_day(0), _day(365), TODAY) is None

    def test_longer_than_a_year_warns(self):
        warning = validate_break_dates(_day(0), _day(366), TODAY)
        assert warning is not None
        assert warning.duration_days == 367


class TestScheduleBreak:
    @pytest.mark.asyncio
    async def test_future_break_is_scheduled(self, service):
        result = await service.breaks.schedule_break("alice", _day(3), _day(5), "trip")
        assert result.brk.status == BreakStatus.SCHEDULED
        assert result.brk.duration_days == 3
        assert result.brk.notes == "trip"
        assert result.warning is None

    @pytest.mark.asyncio
    async def test_long_break_succeeds_with_warning(self, service):
        """Day 10 to day 400 -> success plus LongBreakWarning."""
        result = await service.breaks.schedule_break("alice", _day(10), _day(400))
        assert result.brk.status == BreakStatus.SCHEDULED
        assert result.warning is not None
        assert result.warning.duration_days == 391

    @pytest.mark.asyncio
    async def test_past_start_rejected(self, service):
        with pytest.raises(InvalidDateRange):
            await service.breaks.schedule_break("alice", _day(-1), _day(1))

    @pytest.mark.asyncio
    async def test_break_starting_today_marks_pending_ping(self, service, connect):
        """A break starting today turns today's pending ping on_break."""
        conn = await connect()
        ping = await service.lifecycle.generate_daily_ping(conn)
        assert ping.status == PingStatus.PENDING

        result = await service.breaks.schedule_break("alice", TODAY, _day(2))

        assert result.brk.status == BreakStatus.ACTIVE
        stored = await service.repository.get_ping(ping.id)
        assert stored.status == PingStatus.ON_BREAK
        assert stored.completion_method == CompletionMethod.AUTO_BREAK

    @pytest.mark.asyncio
    async def test_break_started_notifies_receivers(self, service, connect, transport):
        await connect(receiver_id="bob")
        await connect(receiver_id="carol")
        await service.breaks.schedule_break("alice", TODAY, _day(1))
        await service.notifications.drain()
        assert transport.categories("bob") == ["break_started"]
        assert transport.categories("carol") == ["break_started"]


class TestOverlap:
    @pytest.mark.asyncio
    async def test_overlapping_ranges_rejected(self, service):
        await service.breaks.schedule_break("alice", _day(5), _day(10))
        await service.breaks.schedule_break("alice", _day(20), _day(25))

        for start, end in [
            (_day(8), _day(12)),
            (_day(1), _day(5)),
            (_day(10), _day(10)),
            (_day(4), _day(30)),
            (_day(22), _day(23)),
        ]:
            with pytest.raises(OverlappingBreak):
                await service.breaks.schedule_break("alice", start, end)

    @pytest.mark.asyncio
    async def test_disjoint_ranges_accepted(self, service):
        await service.breaks.schedule_break("alice", _day(5), _day(10))
        await service.breaks.schedule_break("alice", _day(20), _day(25))

        first = await service.breaks.schedule_break("alice", _day(11), _day(19))
        second = await service.breaks.schedule_break("alice", _day(1), _day(4))
        assert first.brk.status == BreakStatus.SCHEDULED
        assert second.brk.status == BreakStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_other_senders_and_canceled_breaks_do_not_block(self, service):
        await service.breaks.schedule_break("carol", _day(5), _day(10))
        canceled = await service.breaks.schedule_break("alice", _day(5), _day(10))
        await service.breaks.cancel_break(canceled.brk.id, "alice")

        result = await service.breaks.schedule_break("alice", _day(6), _day(8))
        assert result.brk.status == BreakStatus.SCHEDULED


class TestIsOnBreak:
    @pytest.mark.asyncio
    async def test_range_is_inclusive(self, service):
        await service.breaks.schedule_break("alice", _day(3), _day(5))
        assert not await service.breaks.is_on_break("alice", _day(2))
        assert await service.breaks.is_on_break("alice", _day(3))
        assert await service.breaks.is_on_break("alice", _day(5))
        assert not await service.breaks.is_on_break("alice", _day(6))
        assert not await service.breaks.is_on_break("bob", _day(4))


class TestCancelAndEnd:
    @pytest.mark.asyncio
    async def test_cancel_restores_todays_obligation(self, service, connect):
        conn = await connect()
        ping = await service.lifecycle.generate_daily_ping(conn)
        result = await service.breaks.schedule_break("alice", TODAY, _day(3))

        brk = await service.breaks.cancel_break(result.brk.id, "alice")

        assert brk.status == BreakStatus.CANCELED
        stored = await service.repository.get_ping(ping.id)
        assert stored.status == PingStatus.PENDING
        assert stored.completion_method is None

    @pytest.mark.asyncio
    async def test_cancel_keeps_past_break_days(self, service, connect, clock):
        """Only pings from today onward revert; yesterday stays on_break."""
        conn = await connect()
        await service.lifecycle.generate_daily_ping(conn)
        result = await service.breaks.schedule_break("alice", TODAY, _day(5))

        clock.advance(days=1)
        tomorrow = await service.lifecycle.generate_daily_ping(conn)
        assert tomorrow.status == PingStatus.ON_BREAK

        await service.breaks.cancel_break(result.brk.id, "alice")

        pings = await service.repository.query_pings(sender_id="alice")
        by_day = {p.ping_date: p.status for p in pings}
        assert by_day[TODAY] == PingStatus.ON_BREAK
        assert by_day[_day(1)] == PingStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_twice_is_idempotent(self, service, connect):
        conn = await connect()
        ping = await service.lifecycle.generate_daily_ping(conn)
        result = await service.breaks.schedule_break("alice", TODAY, _day(3))

        await service.breaks.cancel_break(result.brk.id, "alice")
        again = await service.breaks.cancel_break(result.brk.id, "alice")

        assert again.status == BreakStatus.CANCELED
        stored = await service.repository.get_ping(ping.id)
        assert stored.status == PingStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_completed_break_rejected(self, service, clock):
        result = await service.breaks.schedule_break("alice", TODAY, TODAY)
        clock.advance(days=1)
        await service.breaks.advance_break_statuses()

        with pytest.raises(InvalidTransition):
            await service.breaks.cancel_break(result.brk.id, "alice")

    @pytest.mark.asyncio
    async def test_cancel_someone_elses_break(self, service):
        result = await service.breaks.schedule_break("alice", _day(2), _day(3))
        with pytest.raises(BreakNotFound):
            await service.breaks.cancel_break(result.brk.id, "mallory")
        with pytest.raises(BreakNotFound):
            await service.breaks.cancel_break("missing", "alice")

    @pytest.mark.asyncio
    async def test_end_early_truncates_to_today(self, service, connect, clock):
        conn = await connect()
        await service.lifecycle.generate_daily_ping(conn)
        result = await service.breaks.schedule_break("alice", TODAY, _day(5))
        clock.advance(days=1)
        await service.lifecycle.generate_daily_ping(conn)

        brk = await service.breaks.end_break_early(result.brk.id, "alice")

        assert brk.status == BreakStatus.CANCELED
        assert brk.end_date == _day(1)
        pings = await service.repository.query_pings(sender_id="alice")
        by_day = {p.ping_date: p.status for p in pings}
        assert by_day[TODAY] == PingStatus.ON_BREAK
        assert by_day[_day(1)] == PingStatus.PENDING

    @pytest.mark.asyncio
    async def test_end_early_before_start_cancels(self, service):
        result = await service.breaks.schedule_break("alice", _day(4), _day(6))
        brk = await service.breaks.end_break_early(result.brk.id, "alice")
        assert brk.status == BreakStatus.CANCELED
        assert brk.end_date == _day(6)


class TestAdvanceStatuses:
    @pytest.mark.asyncio
    async def test_start_and_complete_are_idempotent(self, service, connect, clock):
        conn = await connect()
        upcoming = await service.lifecycle.generate_daily_ping(conn, _day(1))
        assert upcoming.status == PingStatus.PENDING
        result = await service.breaks.schedule_break("alice", _day(1), _day(2))

        clock.advance(days=1)
        assert await service.breaks.advance_break_statuses() == {"started": 1, "completed": 0}
        assert await service.breaks.advance_break_statuses() == {"started": 0, "completed": 0}

        stored = await service.repository.get_ping(upcoming.id)
        assert stored.status == PingStatus.ON_BREAK
        assert (await service.breaks.active_break("alice")).id == result.brk.id

        clock.advance(days=2)
        assert await service.breaks.advance_break_statuses() == {"started": 0, "completed": 1}
        assert await service.breaks.active_break("alice") is None
        history = await service.breaks.break_history("alice")
        assert [b.status for b in history] == [BreakStatus.COMPLETED]


class TestQueries:
    @pytest.mark.asyncio
    async def test_scheduled_and_history_ordering(self, service):
        later = await service.breaks.schedule_break("alice", _day(20), _day(21))
        sooner = await service.breaks.schedule_break("alice", _day(5), _day(6))
        dropped = await service.breaks.schedule_break("alice", _day(30), _day(31))
        await service.breaks.cancel_break(dropped.brk.id, "alice")

        scheduled = await service.breaks.scheduled_breaks("alice")
        assert [b.id for b in scheduled] == [sooner.brk.id, later.brk.id]

        history = await service.breaks.break_history("alice")
        assert [b.id for b in history] == [dropped.brk.id]
