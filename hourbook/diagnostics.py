"""
Diagnostics — operator tools for inspecting and repairing a running core.

Everything here is a plain function taking a HourbookCore, so the same
helpers work from a Python shell, a debug menu, or a test.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict
from typing import Any, Deque, Dict, List, Optional

from hourbook.data.models import to_iso
from hourbook.data.repository import reset_all_data as _reset_tables
from hourbook.services.aggregation_service import BackfillSummary, DriftReport
from hourbook.services.write_queue import FlushResult

logger = logging.getLogger(__name__)

# Debug categories → loggers raised to DEBUG by enable_debug()
DEBUG_CATEGORIES: Dict[str, List[str]] = {
    "time": ["hourbook.services.week_boundary", "hourbook.services.session_service"],
    "db": ["hourbook.data"],
    "sync": ["hourbook.services.write_queue"],
    "stats": ["hourbook.services.aggregation_service"],
}

RECENT_LOG_LIMIT = 100


class RecentLogHandler(logging.Handler):
    """Keeps the last RECENT_LOG_LIMIT formatted records in memory."""

    def __init__(self, capacity: int = RECENT_LOG_LIMIT) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: Deque[Dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append({
            "time": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        })


_recent = RecentLogHandler()
_enabled: Dict[str, int] = {}


def install_log_buffer() -> RecentLogHandler:
    """Attach the in-memory buffer to the hourbook logger (idempotent)."""
    root = logging.getLogger("hourbook")
    if _recent not in root.handlers:
        root.addHandler(_recent)
    return _recent


def enable_debug(category: str) -> None:
    if category not in DEBUG_CATEGORIES:
        raise ValueError(f"Unknown debug category '{category}' "
                         f"(choose from {', '.join(DEBUG_CATEGORIES)})")
    install_log_buffer()
    for name in DEBUG_CATEGORIES[category]:
        target = logging.getLogger(name)
        _enabled.setdefault(name, target.level)
        target.setLevel(logging.DEBUG)
    logger.info("Debug logging enabled for '%s'", category)


def disable_debug(category: Optional[str] = None) -> None:
    """Restore previous levels for one category, or for all when None."""
    categories = [category] if category else list(DEBUG_CATEGORIES)
    for cat in categories:
        if cat not in DEBUG_CATEGORIES:
            raise ValueError(f"Unknown debug category '{cat}'")
        for name in DEBUG_CATEGORIES[cat]:
            if name in _enabled:
                logging.getLogger(name).setLevel(_enabled.pop(name))


def recent_logs(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    records = list(_recent.records)
    return records[-limit:] if limit else records


def clear_logs() -> None:
    _recent.records.clear()


# ── State inspection ────────────────────────────────────────────────────────

def dump_state(core) -> Dict[str, Any]:
    """One JSON-friendly dict describing everything the core holds in memory."""
    session = core.session.current_session
    queue_state = core.queue.state.get()
    settings = core.settings.current()
    week = core.cache.current_week()
    return {
        "now": to_iso(core.clock.now()),
        "settings": settings.to_dict(),
        "current_week": {
            "label": week.week_label,
            "start": to_iso(week.start_instant),
            "end": to_iso(week.end_instant),
        },
        "session": {
            "state": core.session.state,
            "awaiting_confirmation": core.session.awaiting_confirmation,
            "detail": session.to_dict() if session else None,
            "worked_minutes": round(core.session.get_worked_minutes(), 1),
        },
        "stats": core.cache.snapshot.get().to_dict(),
        "queue": {
            "size": queue_state.size,
            "syncing": queue_state.syncing,
            "last_sync_attempt": to_iso(queue_state.last_sync_attempt),
            "last_successful_sync": to_iso(queue_state.last_successful_sync),
            "items": [i.to_dict() for i in core.queue.items],
        },
        "persistent_notifications": [
            {"kind": n.kind, "message": n.message, "created_at": to_iso(n.created_at)}
            for n in core.notifications.persistent
        ],
    }


def detect_drift(core, week_label: Optional[str] = None) -> DriftReport:
    return core.cache.detect_drift(week_label)


def force_recompute(core, week_label: Optional[str] = None) -> Dict[str, Any]:
    logger.info("Forced recompute requested (%s)", week_label or "current week")
    return core.cache.recompute(week_label).to_dict()


def run_backfill(core, weeks_back: int = 8, relabel: bool = False) -> BackfillSummary:
    return core.cache.backfill(weeks_back, relabel=relabel)


def flush_queue(core) -> FlushResult:
    return core.queue.flush()


def clear_queue(core) -> int:
    return core.queue.clear()


def dead_letters(core) -> List[Dict[str, Any]]:
    return core.queue.dead_letters()


def reset_all_data(core, confirm: bool = False) -> None:
    """Wipe every table. Refuses unless confirm=True."""
    if not confirm:
        raise ValueError("reset_all_data() deletes everything; pass confirm=True to proceed.")
    _reset_tables(core.conn)
    core.queue.items = []
    core.queue.load()
    core.session.decline()
    core.session.restore()
    core.cache.recompute()


def summary_line(report: DriftReport) -> str:
    if not report.has_drift:
        return f"{report.week_label}: OK ({report.computed_total_minutes} min)"
    return (f"{report.week_label}: DRIFT cached={report.cached_total_minutes} "
            f"actual={report.computed_total_minutes} ({report.drift_minutes:+d} min)")


def report_as_dict(report: DriftReport) -> Dict[str, Any]:
    data = asdict(report)
    data["has_drift"] = report.has_drift
    data["drift_minutes"] = report.drift_minutes
    return data
