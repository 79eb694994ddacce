"""
Data models for Hourbook.

Plain dataclasses that represent stored rows and cached objects. They decouple
the rest of the app from raw SQL rows and JSON blobs so every layer speaks the
same "language." All instants are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width form so stored strings sort in instant order.
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SessionStatus:
    """Lifecycle states of a WorkSession."""
    ACTIVE = "active"
    ON_BREAK = "on_break"
    COMPLETED = "completed"


class TargetKind:
    """Entities a queued write can target."""
    TIME_EVENT = "TimeEvent"
    WORK_SESSION = "WorkSession"
    AGGREGATE_SNAPSHOT = "AggregateSnapshot"


class OperationKind:
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class WeekRange:
    """One local calendar week as a half-open UTC interval [start, end)."""
    start_instant: datetime
    end_instant: datetime
    week_label: str


@dataclass
class TimeEvent:
    """
    An immutable record of worked time.

    week_label is derived from start_instant (never end_instant) under the
    configuration current at write time, and is not rewritten afterwards
    except by an explicit relabelling backfill.
    """
    id: str = ""
    subject_id: str = ""
    job_id: str = ""
    start_instant: Optional[datetime] = None
    end_instant: Optional[datetime] = None
    duration_minutes: int = 0
    week_label: str = ""
    task_id: Optional[str] = None
    note: Optional[str] = None
    billable: bool = True
    source: str = "manual"          # 'timer' or 'manual'
    session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "job_id": self.job_id,
            "start_instant": to_iso(self.start_instant),
            "end_instant": to_iso(self.end_instant),
            "duration_minutes": self.duration_minutes,
            "week_label": self.week_label,
            "task_id": self.task_id,
            "note": self.note,
            "billable": self.billable,
            "source": self.source,
            "session_id": self.session_id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "deleted_at": to_iso(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeEvent":
        return cls(
            id=data["id"],
            subject_id=data.get("subject_id", ""),
            job_id=data["job_id"],
            start_instant=from_iso(data.get("start_instant")),
            end_instant=from_iso(data.get("end_instant")),
            duration_minutes=int(data.get("duration_minutes", 0)),
            week_label=data.get("week_label", ""),
            task_id=data.get("task_id"),
            note=data.get("note"),
            billable=bool(data.get("billable", True)),
            source=data.get("source", "manual"),
            session_id=data.get("session_id"),
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data.get("updated_at")),
            deleted_at=from_iso(data.get("deleted_at")),
        )


@dataclass
class BreakInterval:
    """A break inside a work session; end_instant is None while it is open."""
    start_instant: datetime
    end_instant: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.end_instant is None

    def duration_ms(self) -> int:
        if self.end_instant is None:
            return 0
        return int((self.end_instant - self.start_instant).total_seconds() * 1000)


@dataclass
class WorkSession:
    """One clock-in to clock-out period, including its breaks."""
    id: str = ""
    subject_id: str = ""
    job_id: str = ""
    clock_in_instant: Optional[datetime] = None
    clock_out_instant: Optional[datetime] = None
    status: str = SessionStatus.ACTIVE
    breaks: List[BreakInterval] = field(default_factory=list)
    accumulated_break_ms: int = 0
    time_event_id: Optional[str] = None

    @property
    def open_break(self) -> Optional[BreakInterval]:
        for brk in self.breaks:
            if brk.is_open:
                return brk
        return None

    def copy(self) -> "WorkSession":
        """Deep-enough copy: breaks are duplicated so mutations don't leak."""
        return replace(self, breaks=[replace(b) for b in self.breaks])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "job_id": self.job_id,
            "clock_in_instant": to_iso(self.clock_in_instant),
            "clock_out_instant": to_iso(self.clock_out_instant),
            "status": self.status,
            "breaks": [
                {"start_instant": to_iso(b.start_instant),
                 "end_instant": to_iso(b.end_instant)}
                for b in self.breaks
            ],
            "accumulated_break_ms": self.accumulated_break_ms,
            "time_event_id": self.time_event_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkSession":
        return cls(
            id=data["id"],
            subject_id=data.get("subject_id", ""),
            job_id=data.get("job_id", ""),
            clock_in_instant=from_iso(data.get("clock_in_instant")),
            clock_out_instant=from_iso(data.get("clock_out_instant")),
            status=data.get("status", SessionStatus.ACTIVE),
            breaks=[
                BreakInterval(from_iso(b["start_instant"]), from_iso(b.get("end_instant")))
                for b in data.get("breaks") or []
            ],
            accumulated_break_ms=int(data.get("accumulated_break_ms", 0)),
            time_event_id=data.get("time_event_id"),
        )


@dataclass
class AggregateSnapshot:
    """The cached "this week" totals. A pure cache, never a source of truth."""
    week_label: str = ""
    total_minutes: int = 0
    target_minutes: int = 0
    per_job_minutes: Dict[str, int] = field(default_factory=dict)
    last_updated_at: Optional[datetime] = None
    last_full_recompute_at: Optional[datetime] = None

    def same_totals(self, other: "AggregateSnapshot") -> bool:
        return (
            self.week_label == other.week_label
            and self.total_minutes == other.total_minutes
            and self.per_job_minutes == other.per_job_minutes
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_label": self.week_label,
            "total_minutes": self.total_minutes,
            "target_minutes": self.target_minutes,
            "per_job_minutes": dict(self.per_job_minutes),
            "last_updated_at": to_iso(self.last_updated_at),
            "last_full_recompute_at": to_iso(self.last_full_recompute_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateSnapshot":
        return cls(
            week_label=data.get("week_label", ""),
            total_minutes=int(data.get("total_minutes", 0)),
            target_minutes=int(data.get("target_minutes", 0)),
            per_job_minutes={k: int(v) for k, v in (data.get("per_job_minutes") or {}).items()},
            last_updated_at=from_iso(data.get("last_updated_at")),
            last_full_recompute_at=from_iso(data.get("last_full_recompute_at")),
        )


@dataclass
class QueuedWrite:
    """A write that failed its first attempt and waits for a retry."""
    id: str = ""
    target_kind: str = ""
    operation_kind: str = OperationKind.CREATE
    payload: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: Optional[datetime] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target_kind": self.target_kind,
            "operation_kind": self.operation_kind,
            "payload": self.payload,
            "enqueued_at": to_iso(self.enqueued_at),
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "next_attempt_at": to_iso(self.next_attempt_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedWrite":
        return cls(
            id=data["id"],
            target_kind=data["target_kind"],
            operation_kind=data.get("operation_kind", OperationKind.CREATE),
            payload=dict(data.get("payload") or {}),
            enqueued_at=from_iso(data.get("enqueued_at")),
            attempt_count=int(data.get("attempt_count", 0)),
            last_error=data.get("last_error"),
            next_attempt_at=from_iso(data.get("next_attempt_at")),
        )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Defines the "shape" of every object the aggregation core moves around.
#   They carry data plus JSON round-tripping; no database logic.
#
# Key classes and why they exist:
#   - TimeEvent: the source of truth for worked time. week_label is stamped
#     once at write time from the START instant.
#   - WorkSession / BreakInterval: the mutable clock-in state that becomes
#     exactly one TimeEvent at clock-out.
#   - AggregateSnapshot: the cached weekly totals. Always written whole, so a
#     crash leaves either the old or the new snapshot, never half of one.
#   - QueuedWrite: a pending write that survives restarts.
#
# Interviewer-friendly talking points:
#   1. Aware UTC datetimes everywhere. Local time only exists inside the week
#      boundary math; storage never sees a naive datetime.
#   2. to_dict/from_dict use ISO strings so the same payload can live in a
#      SQLite row, a JSON blob in the key/value table, or the retry queue.
#   3. Constants classes (SessionStatus, TargetKind) instead of Enum keep the
#      stored values plain strings.
