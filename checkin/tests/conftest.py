"""Shared test fixtures."""

from __future__ import annotations

import os
from datetime import date, datetime, timezone

import pytest
import pytest_asyncio

# Force in-memory store for all tests
os.environ["USE_MEMORY_STORE"] = "1"

from checkin.clock import ManualClock
from checkin.models import Connection, ConnectionStatus, SenderProfile
from checkin.service import build_service
from checkin.store.memory import InMemoryRepository

# 2026-03-10 08:00 UTC: an hour before a 09:00 UTC ping is due
NOW = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 10)


class RecordingTransport:
    """Transport that keeps every notification it is handed."""

    def __init__(self) -> None:
        self.sent = []

    async def send(self, notification) -> bool:
        self.sent.append(notification)
        return True

    def categories(self, recipient_id=None) -> list[str]:
        return [
            n.category
            for n in self.sent
            if recipient_id is None or n.recipient_id == recipient_id
        ]


@pytest.fixture()
def repo():
    """Return a fresh InMemoryRepository instance."""
    return InMemoryRepository()


@pytest.fixture()
def clock():
    return ManualClock(NOW)


@pytest.fixture()
def transport():
    return RecordingTransport()


@pytest_asyncio.fixture()
async def service(repo, clock, transport):
    """A fully wired service on the in-memory store and manual clock."""
    svc = build_service(repo, clock=clock, transport=transport)
    yield svc
    await svc.notifications.drain()


@pytest.fixture()
def connect(service, clock):
    """Factory: save a sender profile and create an active connection."""

    async def _connect(
        sender_id: str = "alice",
        receiver_id: str = "bob",
        ping_time: str = "09:00",
        grace_period_minutes: int = 90,
        tz_name: str = "UTC",
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> Connection:
        await service.repository.save_sender_profile(
            SenderProfile(
                sender_id=sender_id,
                ping_time=ping_time,
                grace_period_minutes=grace_period_minutes,
                timezone=tz_name,
            )
        )
        clock.set_timezone(sender_id, tz_name)
        return await service.repository.create_connection(
            Connection(sender_id=sender_id, receiver_id=receiver_id, status=status)
        )

    return _connect
