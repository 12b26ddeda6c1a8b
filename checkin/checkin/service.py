"""Service assembly: one explicit object holding collaborators and components.

Nothing here is a module-level singleton; the app builds a service in its
lifespan and tests build their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from checkin.clock import Clock, SystemClock
from checkin.config import EngineConfig
from checkin.lifecycle.breaks import BreakManager
from checkin.lifecycle.engine import PingLifecycleEngine
from checkin.lifecycle.events import EventBus
from checkin.lifecycle.streak import StreakCalculator
from checkin.location import AccuracyVerifier, LocationVerifier
from checkin.notification.dispatcher import NotificationDispatcher
from checkin.notification.preferences import StorePreferences
from checkin.notification.transport import (
    FanoutTransport,
    LoggingTransport,
    NotificationTransport,
    PushGatewayTransport,
)

logger = logging.getLogger(__name__)


@dataclass
class CheckinService:
    repository: object
    clock: Clock
    bus: EventBus
    breaks: BreakManager
    lifecycle: PingLifecycleEngine
    streaks: StreakCalculator
    notifications: NotificationDispatcher
    preferences: StorePreferences
    config: EngineConfig


def default_transport(config: EngineConfig) -> NotificationTransport:
    """Logging transport, plus the push gateway when one is configured."""
    if config.push_gateway_url:
        return FanoutTransport(
            LoggingTransport(), PushGatewayTransport(config.push_gateway_url)
        )
    return LoggingTransport()


def build_service(
    repository,
    config: Optional[EngineConfig] = None,
    clock: Optional[Clock] = None,
    transport: Optional[NotificationTransport] = None,
    location_verifier: Optional[LocationVerifier] = None,
    bus: Optional[EventBus] = None,
) -> CheckinService:
    """Wire the components around a repository.

    The dispatcher subscribes to the bus first, so it sees each event
    before any later subscriber (such as the websocket broadcaster).
    """
    config = config or EngineConfig()
    clock = clock or SystemClock(repository, config.default_timezone)
    bus = bus or EventBus()
    verifier = location_verifier or AccuracyVerifier(config.max_location_accuracy_meters)
    preferences = StorePreferences(repository)

    breaks = BreakManager(repository, clock, bus)
    lifecycle = PingLifecycleEngine(repository, clock, breaks, bus, verifier)
    breaks.bind_lifecycle(lifecycle)

    notifications = NotificationDispatcher(
        repository,
        clock,
        preferences=preferences,
        transport=transport or default_transport(config),
        snooze_minutes=config.snooze_minutes,
    )
    bus.subscribe(notifications.handle)

    logger.info("Check-in service built (store=%s)", type(repository).__name__)
    return CheckinService(
        repository=repository,
        clock=clock,
        bus=bus,
        breaks=breaks,
        lifecycle=lifecycle,
        streaks=StreakCalculator(repository, clock),
        notifications=notifications,
        preferences=preferences,
        config=config,
    )
