"""REST API routes for the check-in engine.

Endpoints:
    GET    /api/health                                  -> Health check
    POST   /api/connections                             -> Create + activate a connection
    DELETE /api/connections/{id}                        -> Soft-delete a connection
    POST   /api/connections/{id}/pause                  -> Pause a connection
    POST   /api/connections/{id}/resume                 -> Reactivate a paused connection
    PUT    /api/senders/{id}/profile                    -> Update ping schedule/timezone
    POST   /api/pings/generate                          -> Run daily generation
    POST   /api/pings/sweep                             -> Run the missed sweep
    POST   /api/pings/{id}/complete                     -> Complete one ping
    POST   /api/pings/{id}/snooze                       -> Remind again in a few minutes
    POST   /api/senders/{id}/complete                   -> Complete all pending pings
    GET    /api/senders/{id}/today                      -> Today's status
    GET    /api/senders/{id}/history                    -> Ping history (paginated)
    GET    /api/senders/{id}/stats                      -> Completed/missed totals
    GET    /api/senders/{id}/streak                     -> Current streak
    POST   /api/senders/{id}/breaks                     -> Schedule a break
    GET    /api/senders/{id}/breaks                     -> Active, upcoming and past breaks
    POST   /api/senders/{id}/breaks/{break_id}/cancel   -> Cancel a break
    POST   /api/senders/{id}/breaks/{break_id}/end      -> End a break early
    GET    /api/users/{id}/preferences                  -> Notification preferences
    PUT    /api/users/{id}/preferences                  -> Update preferences
    POST   /api/users/{id}/muted-senders/{sender_id}    -> Mute a sender
    DELETE /api/users/{id}/muted-senders/{sender_id}    -> Unmute a sender
    GET    /api/users/{id}/notifications                -> Delivered notifications
    GET    /api/settings                                -> Current engine settings
    PUT    /api/settings                                -> Update engine settings
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from checkin.api.schemas import (
    BreakCreate,
    CompleteRequest,
    ConnectionCreate,
    GenerateRequest,
    HealthResponse,
    PreferencesUpdate,
    ProfileUpdate,
    SettingsResponse,
    SettingsUpdate,
)
from checkin.config import EngineConfig, load_config, save_config
from checkin.errors import (
    CheckinError,
    ConnectionNotFound,
    DuplicatePing,
    InvalidTransition,
    NotFoundError,
    OverlappingBreak,
    PingExpired,
)
from checkin.lifecycle.deadline import parse_time_of_day, validate_timezone
from checkin.models import Connection, ConnectionStatus, SenderProfile
from checkin.service import CheckinService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# --- Shared state (set by main.py at startup) ---

_engine_state: dict = {
    "running": False,
    "start_time": None,
    "service": None,
    "apply_config_callback": None,
}


def set_engine_state(key: str, value: object) -> None:
    """Set a shared engine state value (called from main.py)."""
    _engine_state[key] = value


def get_engine_state(key: str) -> object:
    """Get a shared engine state value."""
    return _engine_state.get(key)


def _service() -> CheckinService:
    service = _engine_state.get("service")
    if service is None:
        raise HTTPException(status_code=503, detail="Check-in service not available")
    return service


_CONFLICTS = (PingExpired, OverlappingBreak, InvalidTransition, DuplicatePing)


def _http_error(exc: CheckinError) -> HTTPException:
    """Map an engine error to an HTTP status."""
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, _CONFLICTS):
        status = 409
    else:
        status = 400
    return HTTPException(
        status_code=status,
        detail={"error": type(exc).__name__, "message": str(exc)},
    )


# --- Health ---


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    start_time = _engine_state.get("start_time")
    uptime = time.time() - start_time if start_time else 0.0
    service = _engine_state.get("service")
    return HealthResponse(
        status="ok",
        running=bool(_engine_state.get("running")),
        uptime_seconds=round(uptime, 1),
        store=type(service.repository).__name__ if service else "",
    )


# --- Connections and profiles ---


@router.post("/connections")
async def create_connection(body: ConnectionCreate) -> dict:
    """Create a connection; an active one gets today's ping right away."""
    svc = _service()
    connection = await svc.repository.create_connection(
        Connection(
            sender_id=body.sender_id,
            receiver_id=body.receiver_id,
            status=body.status,
        )
    )
    ping = None
    if connection.is_active:
        try:
            ping = await svc.lifecycle.activate_connection(connection)
        except CheckinError as e:
            raise _http_error(e) from e
    return {
        "connection": connection.to_dict(),
        "ping": ping.to_dict() if ping else None,
    }


@router.delete("/connections/{connection_id}")
async def delete_connection(connection_id: str) -> dict:
    """Soft-delete a connection. Past pings are kept."""
    svc = _service()
    try:
        updated = await svc.lifecycle.set_connection_status(
            connection_id, ConnectionStatus.DELETED
        )
    except CheckinError as e:
        raise _http_error(e) from e
    return {"connection": updated.to_dict()}


@router.post("/connections/{connection_id}/pause")
async def pause_connection(connection_id: str) -> dict:
    """Suspend a connection: no new pings and no reminders until resumed."""
    svc = _service()
    try:
        updated = await svc.lifecycle.set_connection_status(
            connection_id, ConnectionStatus.PAUSED
        )
    except CheckinError as e:
        raise _http_error(e) from e
    return {"connection": updated.to_dict()}


@router.post("/connections/{connection_id}/resume")
async def resume_connection(connection_id: str) -> dict:
    """Reactivate a paused connection and create today's ping if still due."""
    svc = _service()
    connection = await svc.repository.get_connection(connection_id)
    if connection is None or connection.status == ConnectionStatus.DELETED:
        raise _http_error(ConnectionNotFound(f"Connection {connection_id} not found"))
    try:
        ping = await svc.lifecycle.activate_connection(connection)
    except CheckinError as e:
        raise _http_error(e) from e
    connection = await svc.repository.get_connection(connection_id)
    return {
        "connection": connection.to_dict(),
        "ping": ping.to_dict() if ping else None,
    }


@router.put("/senders/{sender_id}/profile")
async def update_profile(sender_id: str, update: ProfileUpdate) -> dict:
    """Update a sender's ping schedule. Only provided fields change."""
    svc = _service()
    profile = await svc.repository.get_sender_profile(sender_id)
    if profile is None:
        profile = SenderProfile(
            sender_id=sender_id,
            ping_time=svc.config.default_ping_time,
            grace_period_minutes=svc.config.default_grace_period_minutes,
            timezone=svc.config.default_timezone,
        )

    update_data = update.model_dump(exclude_none=True)
    try:
        if "ping_time" in update_data:
            parse_time_of_day(update_data["ping_time"])
        if "timezone" in update_data:
            validate_timezone(update_data["timezone"])
    except CheckinError as e:
        raise _http_error(e) from e

    profile = await svc.repository.save_sender_profile(replace(profile, **update_data))
    return {"profile": profile.to_dict()}


# --- Pings ---


@router.post("/pings/generate")
async def generate_pings(body: Optional[GenerateRequest] = None) -> dict:
    """Run daily generation for one connection or for all of them."""
    svc = _service()
    body = body or GenerateRequest()
    if body.connection_id is None:
        report = await svc.lifecycle.generate_all()
        return report.to_dict()

    connection = await svc.repository.get_connection(body.connection_id)
    if connection is None:
        raise _http_error(ConnectionNotFound(f"Connection {body.connection_id} not found"))
    try:
        ping = await svc.lifecycle.generate_daily_ping(connection, body.date)
    except CheckinError as e:
        raise _http_error(e) from e
    return {"created_count": 1 if ping else 0, "pings": [ping.to_dict()] if ping else []}


@router.post("/pings/sweep")
async def sweep_pings() -> dict:
    """Mark overdue pending pings as missed."""
    svc = _service()
    missed = await svc.lifecycle.sweep_missed()
    return {"missed_count": len(missed), "pings": [p.to_dict() for p in missed]}


@router.post("/pings/{ping_id}/complete")
async def complete_ping(ping_id: str, body: Optional[CompleteRequest] = None) -> dict:
    """Complete one pending ping. Lateness is reported, not stored."""
    svc = _service()
    body = body or CompleteRequest()
    location = body.location.to_location() if body.location else None
    try:
        ping = await svc.lifecycle.complete_ping(ping_id, body.method, location)
    except CheckinError as e:
        raise _http_error(e) from e
    return {"ping": ping.to_dict()}


@router.post("/pings/{ping_id}/snooze")
async def snooze_ping(ping_id: str) -> dict:
    svc = _service()
    try:
        notification = await svc.notifications.snooze(ping_id)
    except CheckinError as e:
        raise _http_error(e) from e
    return {"notification": notification.to_dict() if notification else None}


@router.post("/senders/{sender_id}/complete")
async def complete_all(sender_id: str, body: Optional[CompleteRequest] = None) -> dict:
    """Complete every pending ping of a sender across all connections."""
    svc = _service()
    body = body or CompleteRequest()
    location = body.location.to_location() if body.location else None
    try:
        summary = await svc.lifecycle.complete_all_pending(sender_id, body.method, location)
    except CheckinError as e:
        raise _http_error(e) from e
    return summary.to_dict()


@router.get("/senders/{sender_id}/today")
async def todays_status(sender_id: str) -> dict:
    svc = _service()
    status = await svc.lifecycle.todays_status(sender_id)
    return status.to_dict()


@router.get("/senders/{sender_id}/history")
async def ping_history(
    sender_id: str,
    limit: int = Query(30, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict:
    svc = _service()
    pings = await svc.lifecycle.ping_history(sender_id, limit=limit, offset=offset)
    return {"pings": [p.to_dict() for p in pings], "limit": limit, "offset": offset}


@router.get("/senders/{sender_id}/stats")
async def ping_statistics(sender_id: str) -> dict:
    svc = _service()
    stats = await svc.lifecycle.ping_statistics(sender_id)
    return stats.to_dict()


@router.get("/senders/{sender_id}/streak")
async def current_streak(sender_id: str, receiver_id: Optional[str] = Query(None)) -> dict:
    svc = _service()
    streak = await svc.streaks.current_streak(sender_id, receiver_id)
    return {"sender_id": sender_id, "receiver_id": receiver_id, "streak": streak}


# --- Breaks ---


@router.post("/senders/{sender_id}/breaks")
async def schedule_break(sender_id: str, body: BreakCreate) -> dict:
    """Schedule a break. Long breaks succeed with a warning attached."""
    svc = _service()
    try:
        result = await svc.breaks.schedule_break(
            sender_id, body.start_date, body.end_date, body.notes
        )
    except CheckinError as e:
        raise _http_error(e) from e
    return {
        "break": result.brk.to_dict(),
        "warning": result.warning.to_dict() if result.warning else None,
    }


@router.get("/senders/{sender_id}/breaks")
async def list_breaks(sender_id: str, limit: int = Query(20, ge=1, le=200)) -> dict:
    svc = _service()
    active = await svc.breaks.active_break(sender_id)
    scheduled = await svc.breaks.scheduled_breaks(sender_id)
    history = await svc.breaks.break_history(sender_id, limit=limit)
    return {
        "active": active.to_dict() if active else None,
        "scheduled": [b.to_dict() for b in scheduled],
        "history": [b.to_dict() for b in history],
    }


@router.post("/senders/{sender_id}/breaks/{break_id}/cancel")
async def cancel_break(sender_id: str, break_id: str) -> dict:
    svc = _service()
    try:
        brk = await svc.breaks.cancel_break(break_id, sender_id)
    except CheckinError as e:
        raise _http_error(e) from e
    return {"break": brk.to_dict()}


@router.post("/senders/{sender_id}/breaks/{break_id}/end")
async def end_break_early(sender_id: str, break_id: str) -> dict:
    svc = _service()
    try:
        brk = await svc.breaks.end_break_early(break_id, sender_id)
    except CheckinError as e:
        raise _http_error(e) from e
    return {"break": brk.to_dict()}


# --- Notification preferences ---


@router.get("/users/{user_id}/preferences")
async def get_preferences(user_id: str) -> dict:
    svc = _service()
    prefs = await svc.preferences.get(user_id)
    return prefs.to_dict()


@router.put("/users/{user_id}/preferences")
async def update_preferences(user_id: str, update: PreferencesUpdate) -> dict:
    """Update notification toggles. Only provided fields change."""
    svc = _service()
    prefs = await svc.preferences.get(user_id)
    prefs = replace(prefs, **update.model_dump(exclude_none=True))
    await svc.repository.save_preferences(user_id, prefs)
    await svc.notifications.reschedule_for_sender(user_id)
    return prefs.to_dict()


@router.post("/users/{user_id}/muted-senders/{sender_id}")
async def mute_sender(user_id: str, sender_id: str) -> dict:
    svc = _service()
    prefs = (await svc.preferences.get(user_id)).mute_sender(sender_id)
    await svc.repository.save_preferences(user_id, prefs)
    await svc.notifications.reschedule_for_sender(user_id)
    return prefs.to_dict()


@router.delete("/users/{user_id}/muted-senders/{sender_id}")
async def unmute_sender(user_id: str, sender_id: str) -> dict:
    svc = _service()
    prefs = (await svc.preferences.get(user_id)).unmute_sender(sender_id)
    await svc.repository.save_preferences(user_id, prefs)
    await svc.notifications.reschedule_for_sender(user_id)
    return prefs.to_dict()


@router.get("/users/{user_id}/notifications")
async def get_notifications(
    user_id: str,
    limit: int = Query(100, ge=1, le=1000),
) -> list:
    """Delivered notifications for a user, newest first."""
    svc = _service()
    return await svc.repository.get_notifications(user_id, limit=limit)


# --- Settings ---


@router.get("/settings", response_model=SettingsResponse)
async def get_settings() -> SettingsResponse:
    """Get current engine settings."""
    config = load_config()
    return _config_to_response(config)


@router.put("/settings", response_model=SettingsResponse)
async def update_settings(update: SettingsUpdate) -> SettingsResponse:
    """Update engine settings. Only provided fields are updated.

    Changes are saved to disk AND applied to the running loops.
    """
    config = load_config()

    update_data = update.model_dump(exclude_none=True)
    try:
        if "default_ping_time" in update_data:
            parse_time_of_day(update_data["default_ping_time"])
        if "default_timezone" in update_data:
            validate_timezone(update_data["default_timezone"])
    except CheckinError as e:
        raise _http_error(e) from e

    for key, value in update_data.items():
        if hasattr(config, key):
            setattr(config, key, value)

    save_config(config)

    apply_callback = _engine_state.get("apply_config_callback")
    if apply_callback is not None:
        await apply_callback(config)

    return _config_to_response(config)


def _config_to_response(config: EngineConfig) -> SettingsResponse:
    """Convert an EngineConfig to a SettingsResponse."""
    return SettingsResponse(**config.to_dict())
