"""Configuration management for the check-in engine.

Provides centralized config with JSON persistence at ~/.checkin/config.json.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path

# Base directories
APP_DIR = Path.home() / ".checkin"
CONFIG_PATH = APP_DIR / "config.json"
DB_PATH = APP_DIR / "checkin.db"


@dataclass
class EngineConfig:
    """Engine configuration with defaults."""

    # Ping schedule defaults (used when a sender profile omits them)
    default_ping_time: str = "09:00"
    default_grace_period_minutes: int = 90
    default_timezone: str = "UTC"

    # Background loop intervals (seconds)
    sweep_interval_seconds: float = 60.0
    generation_interval_seconds: float = 300.0
    dispatch_interval_seconds: float = 15.0

    # Storage
    store_backend: str = "sqlite"  # sqlite, memory
    db_path: str = str(DB_PATH)

    # Notifications
    push_gateway_url: str = ""
    snooze_minutes: int = 10

    # In-person verification
    max_location_accuracy_meters: float = 100.0

    # Server settings
    engine_port: int = 18090

    def to_dict(self) -> dict:
        """Convert to a plain dict for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        """Create from a dict, ignoring unknown keys."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)

    @property
    def use_memory_store(self) -> bool:
        """Whether the in-memory store should be used instead of SQLite."""
        if os.environ.get("USE_MEMORY_STORE", "").lower() in ("1", "true", "yes"):
            return True
        return self.store_backend == "memory"


def load_config() -> EngineConfig:
    """Load configuration from disk, or return defaults."""
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH, "r") as f:
                data = json.load(f)
            return EngineConfig.from_dict(data)
        except (json.JSONDecodeError, OSError):
            pass
    return EngineConfig()


def save_config(config: EngineConfig) -> None:
    """Save configuration to disk."""
    APP_DIR.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_PATH, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
