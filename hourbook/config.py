"""
Configuration — user settings for week bucketing, targets and retry policy.

Settings live as one JSON blob in the key/value table. Services never cache
a copy; they ask the SettingsStore (via its `current` method) each time they
compute, so a changed timezone applies to the very next write.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Callable, Dict, List, Optional

from hourbook.data.repository import KeyValueStore
from hourbook.services.week_boundary import WEEK_STARTS, validate_timezone

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"


@dataclass(frozen=True)
class Settings:
    timezone: str = "America/Los_Angeles"
    week_start: str = "monday"
    week_target_minutes: int = 3600
    max_session_hours: float = 14
    subject_id: str = "local-user"
    queue_initial_delay_s: float = 1.0
    queue_max_delay_s: float = 60.0
    queue_max_attempts: int = 5

    def __post_init__(self) -> None:
        validate_timezone(self.timezone)
        if self.week_start not in WEEK_STARTS:
            raise ValueError(f"week_start must be one of {WEEK_STARTS}, got '{self.week_start}'")
        if self.week_target_minutes < 0:
            raise ValueError("week_target_minutes cannot be negative")
        if self.max_session_hours <= 0:
            raise ValueError("max_session_hours must be positive")
        if self.queue_initial_delay_s <= 0 or self.queue_max_delay_s < self.queue_initial_delay_s:
            raise ValueError("queue delays must satisfy 0 < initial <= max")
        if self.queue_max_attempts < 1:
            raise ValueError("queue_max_attempts must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class SettingsStore:
    """Loads, validates, persists and broadcasts Settings."""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv
        self._settings: Optional[Settings] = None
        self._subscribers: List[Callable[[Settings, Settings], None]] = []

    def current(self) -> Settings:
        if self._settings is None:
            self._settings = self._load()
        return self._settings

    def update(self, **changes: Any) -> Settings:
        """Apply changes, persist, then notify subscribers with (old, new)."""
        old = self.current()
        new = replace(old, **changes)
        self.kv.set(SETTINGS_KEY, new.to_dict())
        self._settings = new
        logger.info("Settings updated: %s", ", ".join(sorted(changes)))
        for callback in list(self._subscribers):
            callback(old, new)
        return new

    def subscribe(self, callback: Callable[[Settings, Settings], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _load(self) -> Settings:
        stored = self.kv.get(SETTINGS_KEY)
        if not stored:
            return Settings()
        try:
            return Settings.from_dict(stored)
        except (TypeError, ValueError) as exc:
            logger.error("Stored settings are invalid (%s); using defaults.", exc)
            return Settings()
