"""Tests for the REST API routes."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import TODAY
import checkin.config
from checkin.api.routes import _engine_state, set_engine_state
from checkin.main import app


@pytest_asyncio.fixture()
async def client(service):
    saved = dict(_engine_state)
    set_engine_state("service", service)
    set_engine_state("apply_config_callback", None)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    _engine_state.clear()
    _engine_state.update(saved)


async def _setup_sender(client, sender_id="alice", receiver_id="bob", **profile):
    resp = await client.put(
        f"/api/senders/{sender_id}/profile", json={"ping_time": "09:00", **profile}
    )
    assert resp.status_code == 200
    resp = await client.post(
        "/api/connections", json={"sender_id": sender_id, "receiver_id": receiver_id}
    )
    assert resp.status_code == 200
    return resp.json()


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 10, hour, minute, tzinfo=timezone.utc)


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["store"] == "InMemoryRepository"

    @pytest.mark.asyncio
    async def test_unavailable_without_service(self, client):
        set_engine_state("service", None)
        resp = await client.get("/api/senders/alice/today")
        assert resp.status_code == 503


class TestPingRoutes:
    @pytest.mark.asyncio
    async def test_connection_creates_todays_ping(self, client):
        data = await _setup_sender(client)
        ping = data["ping"]
        assert data["connection"]["status"] == "active"
        assert ping["status"] == "pending"
        assert ping["scheduled_time"] == _at(9).isoformat()
        assert ping["deadline_time"] == _at(10, 30).isoformat()

        today = (await client.get("/api/senders/alice/today")).json()
        assert today["date"] == TODAY.isoformat()
        assert today["pending"] == 1

    @pytest.mark.asyncio
    async def test_complete_then_conflict(self, client):
        ping_id = (await _setup_sender(client))["ping"]["id"]

        resp = await client.post(f"/api/pings/{ping_id}/complete", json={"method": "tap"})
        assert resp.status_code == 200
        assert resp.json()["ping"]["status"] == "completed"
        assert resp.json()["ping"]["is_late"] is False

        resp = await client.post(f"/api/pings/{ping_id}/complete")
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "InvalidTransition"

    @pytest.mark.asyncio
    async def test_late_completion(self, client, clock):
        ping_id = (await _setup_sender(client))["ping"]["id"]
        clock.set(_at(10, 45))

        resp = await client.post(f"/api/pings/{ping_id}/complete")

        assert resp.status_code == 200
        ping = resp.json()["ping"]
        assert ping["status"] == "completed"
        assert ping["is_late"] is True
        assert ping["completed_at"] == _at(10, 45).isoformat()

    @pytest.mark.asyncio
    async def test_missed_ping_cannot_be_completed(self, client, clock):
        ping_id = (await _setup_sender(client))["ping"]["id"]
        clock.set(_at(11))

        swept = (await client.post("/api/pings/sweep")).json()
        assert swept["missed_count"] == 1

        resp = await client.post(f"/api/pings/{ping_id}/complete")
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "PingExpired"

    @pytest.mark.asyncio
    async def test_unknown_ping(self, client):
        resp = await client.post("/api/pings/nope/complete")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_in_person_requires_accurate_location(self, client):
        ping_id = (await _setup_sender(client))["ping"]["id"]
        resp = await client.post(
            f"/api/pings/{ping_id}/complete",
            json={"method": "in_person", "location": {"lat": 35.0, "lon": 139.0, "accuracy": 500}},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "InsufficientLocationAccuracy"

        resp = await client.post(
            f"/api/pings/{ping_id}/complete",
            json={"method": "in_person", "location": {"lat": 35.0, "lon": 139.0, "accuracy": 20}},
        )
        assert resp.status_code == 200
        assert resp.json()["ping"]["verification_location"]["accuracy"] == 20

    @pytest.mark.asyncio
    async def test_complete_all_for_sender(self, client):
        await _setup_sender(client, receiver_id="bob")
        await _setup_sender(client, receiver_id="carol")

        resp = await client.post("/api/senders/alice/complete")
        assert resp.status_code == 200
        assert resp.json()["completed_count"] == 2

        stats = (await client.get("/api/senders/alice/stats")).json()
        assert stats["completed"] == 2
        assert stats["completion_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_generate_is_idempotent(self, client):
        await _setup_sender(client)
        resp = await client.post("/api/pings/generate")
        assert resp.status_code == 200
        assert resp.json()["created_count"] == 0

    @pytest.mark.asyncio
    async def test_history_and_streak(self, client):
        ping_id = (await _setup_sender(client))["ping"]["id"]
        await client.post(f"/api/pings/{ping_id}/complete")

        history = (await client.get("/api/senders/alice/history", params={"limit": 5})).json()
        assert [p["id"] for p in history["pings"]] == [ping_id]

        streak = (await client.get("/api/senders/alice/streak")).json()
        assert streak["streak"] == 1


class TestConnectionRoutes:
    @pytest.mark.asyncio
    async def test_delete_connection_stops_reminders(
        self, client, service, clock, transport
    ):
        data = await _setup_sender(client)
        conn_id = data["connection"]["id"]

        resp = await client.delete(f"/api/connections/{conn_id}")
        assert resp.status_code == 200
        assert resp.json()["connection"]["status"] == "deleted"

        clock.advance(hours=3)
        swept = (await client.post("/api/pings/sweep")).json()
        assert swept["missed_count"] == 0
        await service.notifications.dispatch_due()
        assert transport.categories("alice") == []

    @pytest.mark.asyncio
    async def test_delete_unknown_connection(self, client):
        resp = await client.delete("/api/connections/nope")
        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "ConnectionNotFound"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, client, service):
        data = await _setup_sender(client)
        conn_id = data["connection"]["id"]
        ping_id = data["ping"]["id"]

        resp = await client.post(f"/api/connections/{conn_id}/pause")
        assert resp.json()["connection"]["status"] == "paused"
        assert service.notifications.queue.pending(ping_id) == []

        resp = await client.post(f"/api/connections/{conn_id}/resume")
        assert resp.status_code == 200
        assert resp.json()["connection"]["status"] == "active"
        assert resp.json()["ping"] is None
        assert len(service.notifications.queue.pending(ping_id)) == 4

        await client.delete(f"/api/connections/{conn_id}")
        resp = await client.post(f"/api/connections/{conn_id}/resume")
        assert resp.status_code == 404


class TestBreakRoutes:
    @pytest.mark.asyncio
    async def test_long_break_returns_warning(self, client):
        resp = await client.post(
            "/api/senders/alice/breaks",
            json={
                "start_date": (TODAY + timedelta(days=10)).isoformat(),
                "end_date": (TODAY + timedelta(days=400)).isoformat(),
            },
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["break"]["status"] == "scheduled"
        assert data["warning"]["duration_days"] == 391

    @pytest.mark.asyncio
    async def test_overlap_and_past_start(self, client):
        body = {
            "start_date": (TODAY + timedelta(days=5)).isoformat(),
            "end_date": (TODAY + timedelta(days=10)).isoformat(),
        }
        assert (await client.post("/api/senders/alice/breaks", json=body)).status_code == 200

        resp = await client.post("/api/senders/alice/breaks", json=body)
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "OverlappingBreak"

        resp = await client.post(
            "/api/senders/alice/breaks",
            json={
                "start_date": (TODAY - timedelta(days=1)).isoformat(),
                "end_date": TODAY.isoformat(),
            },
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "InvalidDateRange"

    @pytest.mark.asyncio
    async def test_list_and_cancel(self, client):
        await _setup_sender(client)
        created = (
            await client.post(
                "/api/senders/alice/breaks",
                json={"start_date": TODAY.isoformat(), "end_date": TODAY.isoformat()},
            )
        ).json()["break"]
        assert created["status"] == "active"

        listing = (await client.get("/api/senders/alice/breaks")).json()
        assert listing["active"]["id"] == created["id"]

        resp = await client.post(f"/api/senders/alice/breaks/{created['id']}/cancel")
        assert resp.status_code == 200
        assert resp.json()["break"]["status"] == "canceled"

        today = (await client.get("/api/senders/alice/today")).json()
        assert today["pending"] == 1

        resp = await client.post(f"/api/senders/mallory/breaks/{created['id']}/cancel")
        assert resp.status_code == 404


class TestPreferenceRoutes:
    @pytest.mark.asyncio
    async def test_update_and_mute(self, client):
        resp = await client.put("/api/users/bob/preferences", json={"sound_enabled": False})
        assert resp.status_code == 200
        assert resp.json()["sound_enabled"] is False
        assert resp.json()["missed_ping_alerts"] is True

        resp = await client.post("/api/users/bob/muted-senders/alice")
        assert resp.json()["muted_sender_ids"] == ["alice"]

        resp = await client.delete("/api/users/bob/muted-senders/alice")
        assert resp.json()["muted_sender_ids"] == []
        assert resp.json()["sound_enabled"] is False

    @pytest.mark.asyncio
    async def test_delivered_notifications(self, client, service):
        ping_id = (await _setup_sender(client))["ping"]["id"]
        await client.post(f"/api/pings/{ping_id}/complete")
        await service.notifications.drain()

        resp = await client.get("/api/users/bob/notifications")
        assert resp.status_code == 200
        assert [n["category"] for n in resp.json()] == ["ping_completed_on_time"]

    @pytest.mark.asyncio
    async def test_preference_change_replans_reminders(self, client, service):
        ping_id = (await _setup_sender(client))["ping"]["id"]
        assert len(service.notifications.queue.pending(ping_id)) == 4

        resp = await client.put(
            "/api/users/alice/preferences", json={"notifications_enabled": False}
        )
        assert resp.status_code == 200
        assert service.notifications.queue.pending(ping_id) == []

        resp = await client.post(f"/api/pings/{ping_id}/snooze")
        assert resp.status_code == 200
        assert resp.json()["notification"] is None

        await client.put("/api/users/alice/preferences", json={"notifications_enabled": True})
        assert len(service.notifications.queue.pending(ping_id)) == 4


class TestProfileAndSettings:
    @pytest.mark.asyncio
    async def test_bad_timezone_rejected(self, client):
        resp = await client.put("/api/senders/alice/profile", json={"timezone": "Mars/Olympus"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "InvalidConfiguration"

    @pytest.mark.asyncio
    async def test_bad_ping_time_rejected(self, client):
        resp = await client.put("/api/senders/alice/profile", json={"ping_time": "25:00"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_settings_round_trip(self, client, tmp_path, monkeypatch):
        monkeypatch.setattr(checkin.config, "APP_DIR", tmp_path)
        monkeypatch.setattr(checkin.config, "CONFIG_PATH", tmp_path / "config.json")

        resp = await client.get("/api/settings")
        assert resp.status_code == 200
        assert resp.json()["default_grace_period_minutes"] == 90

        resp = await client.put(
            "/api/settings", json={"default_grace_period_minutes": 60, "snooze_minutes": 5}
        )
        assert resp.status_code == 200
        assert resp.json()["snooze_minutes"] == 5
        assert (tmp_path / "config.json").exists()

        resp = await client.get("/api/settings")
        assert resp.json()["default_grace_period_minutes"] == 60

        resp = await client.put("/api/settings", json={"default_timezone": "Nowhere/Land"})
        assert resp.status_code == 400
