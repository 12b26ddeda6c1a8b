"""Per-user notification preferences."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class NotificationPreferences:
    """Notification toggles for one user. Everything defaults to on."""

    # Master toggle
    notifications_enabled: bool = True

    # Sender-facing
    ping_reminders: bool = True
    fifteen_minute_warning: bool = True
    deadline_warning: bool = True

    # Receiver-facing
    ping_completed_notifications: bool = True
    missed_ping_alerts: bool = True
    break_notifications: bool = True

    sound_enabled: bool = True

    # Receivers can silence a single sender without touching the connection
    muted_sender_ids: tuple[str, ...] = ()

    def is_sender_muted(self, sender_id: str) -> bool:
        return sender_id in self.muted_sender_ids

    def mute_sender(self, sender_id: str) -> NotificationPreferences:
        if self.is_sender_muted(sender_id):
            return self
        return replace(self, muted_sender_ids=self.muted_sender_ids + (sender_id,))

    def unmute_sender(self, sender_id: str) -> NotificationPreferences:
        remaining = tuple(s for s in self.muted_sender_ids if s != sender_id)
        return replace(self, muted_sender_ids=remaining)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["muted_sender_ids"] = list(self.muted_sender_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> NotificationPreferences:
        """Create from a dict, ignoring unknown keys."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        if "muted_sender_ids" in filtered:
            filtered["muted_sender_ids"] = tuple(filtered["muted_sender_ids"] or ())
        return cls(**filtered)


class StorePreferences:
    """Preferences provider backed by the repository; missing -> defaults."""

    def __init__(self, repository) -> None:
        self._repository = repository

    async def get(self, user_id: str) -> NotificationPreferences:
        prefs = await self._repository.get_preferences(user_id)
        return prefs if prefs is not None else NotificationPreferences()
