"""
Notification Center — the one outlet for user-facing messages.

Services never print or pop dialogs. They call notify(), and whatever front
end is attached (a tray icon, a log line, a test) subscribes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from hourbook.data.models import utc_now

logger = logging.getLogger(__name__)


class NotificationKind:
    VALIDATION_BLOCKED = "validation_blocked"
    CONFIRMATION_REQUIRED = "confirmation_required"
    WRITE_QUEUED = "write_queued"
    FLUSH_SUMMARY = "flush_summary"
    WRITE_FAILED_PERMANENTLY = "write_failed_permanently"
    BACKFILL_PROGRESS = "backfill_progress"
    BACKFILL_COMPLETE = "backfill_complete"


class Level:
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notification:
    kind: str
    message: str
    level: str = Level.INFO
    persistent: bool = False
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)


class NotificationCenter:
    """Fan-out of notifications; persistent ones are kept until dismissed."""

    def __init__(self) -> None:
        self._subscribers: List[Callable[[Notification], None]] = []
        self.persistent: List[Notification] = []
        self.history: List[Notification] = []

    def subscribe(self, callback: Callable[[Notification], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def notify(
        self,
        kind: str,
        message: str,
        level: str = Level.INFO,
        persistent: bool = False,
        data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        note = Notification(kind, message, level, persistent, dict(data or {}))
        self.history.append(note)
        if persistent:
            self.persistent.append(note)
        log = logger.warning if level != Level.INFO else logger.info
        log("[%s] %s", kind, message)
        for callback in list(self._subscribers):
            callback(note)
        return note

    def dismiss(self, notification_id: str) -> None:
        self.persistent = [n for n in self.persistent if n.id != notification_id]

    def of_kind(self, kind: str) -> List[Notification]:
        return [n for n in self.history if n.kind == kind]
