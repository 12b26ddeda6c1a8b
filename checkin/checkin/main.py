"""FastAPI entry point for the check-in engine.

Runs on localhost:18090. Manages background tasks for:
- Missed sweep (pending pings past their deadline -> missed)
- Daily ping generation + break status advance
- Due notification dispatch
- WebSocket broadcasting of lifecycle events

Usage:
    python -m checkin.main
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from checkin.api.routes import router as api_router
from checkin.api.routes import set_engine_state
from checkin.api.websocket import broadcast_event, registry
from checkin.api.websocket import router as ws_router
from checkin.config import EngineConfig, load_config
from checkin.notification.transport import FanoutTransport, WebSocketTransport
from checkin.service import CheckinService, build_service, default_transport
from checkin.store.memory import InMemoryRepository
from checkin.store.sqlite import SQLiteRepository

logger = logging.getLogger(__name__)

# --- Global state ---

_tasks: list[asyncio.Task] = []
_running = False
_config: EngineConfig = EngineConfig()
_service: Optional[CheckinService] = None


# --- Background loops ---


async def _sweep_loop() -> None:
    """Background task: mark overdue pending pings as missed.

    Reads the interval from the global _config so settings changes take
    effect on the next tick.
    """
    while _running:
        try:
            await _service.lifecycle.sweep_missed()
        except Exception:
            logger.exception("Missed sweep failed")
        await asyncio.sleep(_config.sweep_interval_seconds)


async def _generation_loop() -> None:
    """Background task: advance break statuses, then generate today's pings.

    Breaks go first so a break starting today turns the new ping on_break
    instead of leaving it pending.
    """
    while _running:
        try:
            await _service.breaks.advance_break_statuses()
            await _service.lifecycle.generate_all()
        except Exception:
            logger.exception("Daily generation failed")
        await asyncio.sleep(_config.generation_interval_seconds)


async def _dispatch_loop() -> None:
    """Background task: deliver queued notifications whose time has come."""
    while _running:
        try:
            await _service.notifications.dispatch_due()
        except Exception:
            logger.exception("Notification dispatch failed")
        await asyncio.sleep(_config.dispatch_interval_seconds)


# --- Start/Stop ---


async def apply_config(new_config: EngineConfig) -> None:
    """Apply a new config to the running engine (called from settings API)."""
    global _config

    _config = new_config
    if _service is not None:
        _service.config = new_config
        _service.notifications.snooze_minutes = new_config.snooze_minutes
        _service.notifications.set_transport(_transport_for(new_config))
    logger.info("Applied updated config to running engine.")


def _transport_for(config: EngineConfig):
    return FanoutTransport(default_transport(config), WebSocketTransport(registry))


async def start_loops() -> None:
    """Start all background tasks."""
    global _running

    if _running:
        return

    _running = True
    set_engine_state("running", True)
    set_engine_state("start_time", time.time())

    logger.info("Starting background tasks...")

    _tasks.extend(
        [
            asyncio.create_task(_sweep_loop(), name="sweep_loop"),
            asyncio.create_task(_generation_loop(), name="generation_loop"),
            asyncio.create_task(_dispatch_loop(), name="dispatch_loop"),
        ]
    )


async def stop_loops() -> None:
    """Stop all background tasks."""
    global _running

    _running = False
    set_engine_state("running", False)

    logger.info("Stopping background tasks...")

    for task in _tasks:
        task.cancel()

    await asyncio.gather(*_tasks, return_exceptions=True)
    _tasks.clear()

    logger.info("All background tasks stopped.")


# --- FastAPI app ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: open the store, build the service, start loops."""
    global _config, _service

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    _config = load_config()
    if _config.use_memory_store:
        repository = InMemoryRepository()
        logger.info("Using in-memory store.")
    else:
        repository = SQLiteRepository(_config.db_path)
        await repository.open()

    _service = build_service(
        repository,
        config=_config,
        transport=_transport_for(_config),
    )
    _service.bus.subscribe(broadcast_event)
    await _service.notifications.reschedule_pending()

    set_engine_state("service", _service)
    set_engine_state("apply_config_callback", apply_config)

    await start_loops()

    yield

    # Shutdown
    await stop_loops()
    await _service.notifications.drain()
    set_engine_state("service", None)
    if isinstance(repository, SQLiteRepository):
        await repository.close()


app = FastAPI(
    title="Check-in Engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
app.include_router(ws_router)


def main() -> None:
    """Run the engine server."""
    config = load_config()
    uvicorn.run(
        "checkin.main:app",
        host="127.0.0.1",
        port=config.engine_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
