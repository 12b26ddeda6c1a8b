"""Request/response models for the REST API."""

from __future__ import annotations

import datetime
from typing import Optional

from pydantic import BaseModel, Field

from checkin.models import CompletionMethod, ConnectionStatus, Location


class HealthResponse(BaseModel):
    status: str = "ok"
    running: bool = False
    uptime_seconds: float = 0.0
    store: str = ""


class ConnectionCreate(BaseModel):
    sender_id: str
    receiver_id: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE


class ProfileUpdate(BaseModel):
    ping_time: Optional[str] = None
    grace_period_minutes: Optional[int] = Field(default=None, gt=0)
    ping_enabled: Optional[bool] = None
    timezone: Optional[str] = None


class GenerateRequest(BaseModel):
    connection_id: Optional[str] = None
    date: Optional[datetime.date] = None


class LocationBody(BaseModel):
    lat: float
    lon: float
    accuracy: Optional[float] = None

    def to_location(self) -> Location:
        return Location(lat=self.lat, lon=self.lon, accuracy=self.accuracy)


class CompleteRequest(BaseModel):
    method: CompletionMethod = CompletionMethod.TAP
    location: Optional[LocationBody] = None


class BreakCreate(BaseModel):
    start_date: datetime.date
    end_date: datetime.date
    notes: Optional[str] = None


class PreferencesUpdate(BaseModel):
    notifications_enabled: Optional[bool] = None
    ping_reminders: Optional[bool] = None
    fifteen_minute_warning: Optional[bool] = None
    deadline_warning: Optional[bool] = None
    ping_completed_notifications: Optional[bool] = None
    missed_ping_alerts: Optional[bool] = None
    break_notifications: Optional[bool] = None
    sound_enabled: Optional[bool] = None


class SettingsResponse(BaseModel):
    default_ping_time: str
    default_grace_period_minutes: int
    default_timezone: str
    sweep_interval_seconds: float
    generation_interval_seconds: float
    dispatch_interval_seconds: float
    store_backend: str
    db_path: str
    push_gateway_url: str = ""
    snooze_minutes: int
    max_location_accuracy_meters: float
    engine_port: int


class SettingsUpdate(BaseModel):
    default_ping_time: Optional[str] = None
    default_grace_period_minutes: Optional[int] = Field(default=None, gt=0)
    default_timezone: Optional[str] = None
    sweep_interval_seconds: Optional[float] = Field(default=None, gt=0)
    generation_interval_seconds: Optional[float] = Field(default=None, gt=0)
    dispatch_interval_seconds: Optional[float] = Field(default=None, gt=0)
    push_gateway_url: Optional[str] = None
    snooze_minutes: Optional[int] = Field(default=None, gt=0)
    max_location_accuracy_meters: Optional[float] = Field(default=None, gt=0)
