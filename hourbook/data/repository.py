"""
Repository — the single place where SQL lives.

Every other module talks to these classes, never to raw SQL. sqlite3 failures
are re-raised as StorageError so services can tell "storage is unavailable"
apart from programming errors and hand the write to the retry queue.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from hourbook.errors import EventNotFound, StorageError
from .models import (
    BreakInterval,
    SessionStatus,
    TimeEvent,
    WorkSession,
    from_iso,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

# Fields a caller may patch through EventLogStore.update()
UPDATABLE_EVENT_FIELDS = {
    "job_id", "task_id", "note", "billable",
    "start_instant", "end_instant", "duration_minutes", "week_label",
}


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as exc:
        logger.error("Storage failure during %s: %s", action, exc)
        raise StorageError(f"{action} failed: {exc}") from exc


def _json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


class EventLogStore:
    """Append/soft-delete store of TimeEvents with an audit trail."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # ── Writes ──────────────────────────────────────────────────────────────

    def create(self, event: TimeEvent) -> TimeEvent:
        now = utc_now()
        event.created_at = event.created_at or now
        event.updated_at = now
        try:
            with _storage_errors("create time event"), self.conn:
                self.conn.execute(
                    """INSERT INTO time_events (
                        id, subject_id, job_id, task_id, start_instant, end_instant,
                        duration_minutes, week_label, note, billable, source,
                        session_id, created_at, updated_at, deleted_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event.id, event.subject_id, event.job_id, event.task_id,
                        to_iso(event.start_instant), to_iso(event.end_instant),
                        event.duration_minutes, event.week_label, event.note,
                        1 if event.billable else 0, event.source, event.session_id,
                        to_iso(event.created_at), to_iso(event.updated_at),
                        to_iso(event.deleted_at),
                    ),
                )
                self._audit("time_event", event.id, "create", None, event.to_dict())
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise ValueError(f"Time event {event.id} already exists") from exc
            raise ValueError(f"Time event {event.id} rejected: {exc}") from exc
        logger.debug("Created time event %s (%s, %d min)",
                     event.id, event.week_label, event.duration_minutes)
        return event

    def update(self, event_id: str, patch: Dict[str, Any]) -> TimeEvent:
        unknown = set(patch) - UPDATABLE_EVENT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        with _storage_errors("update time event"), self.conn:
            existing = self._get(event_id)
            if existing is None or existing.is_deleted:
                raise EventNotFound(event_id)
            before = existing.to_dict()
            for key, value in patch.items():
                setattr(existing, key, value)
            existing.updated_at = utc_now()
            self.conn.execute(
                """UPDATE time_events SET
                    job_id = ?, task_id = ?, note = ?, billable = ?,
                    start_instant = ?, end_instant = ?, duration_minutes = ?,
                    week_label = ?, updated_at = ?
                WHERE id = ?""",
                (
                    existing.job_id, existing.task_id, existing.note,
                    1 if existing.billable else 0,
                    to_iso(existing.start_instant), to_iso(existing.end_instant),
                    existing.duration_minutes, existing.week_label,
                    to_iso(existing.updated_at), event_id,
                ),
            )
            self._audit("time_event", event_id, "update", before, existing.to_dict())
        return existing

    def soft_delete(self, event_id: str) -> None:
        with _storage_errors("delete time event"), self.conn:
            existing = self._get(event_id)
            if existing is None or existing.is_deleted:
                return
            before = existing.to_dict()
            now = utc_now()
            existing.deleted_at = now
            existing.updated_at = now
            self.conn.execute(
                "UPDATE time_events SET deleted_at = ?, updated_at = ? WHERE id = ?",
                (to_iso(now), to_iso(now), event_id),
            )
            self._audit("time_event", event_id, "delete", before, existing.to_dict())
        logger.info("Soft-deleted time event %s", event_id)

    def relabel(self, event_id: str, week_label: str) -> None:
        """Rewrite a stored week label (relabelling backfill only)."""
        self.update(event_id, {"week_label": week_label})

    # ── Reads ───────────────────────────────────────────────────────────────

    def get_by_id(self, event_id: str, include_deleted: bool = False) -> Optional[TimeEvent]:
        with _storage_errors("read time event"):
            event = self._get(event_id)
        if event is None or (event.is_deleted and not include_deleted):
            return None
        return event

    def get_by_session(self, session_id: str,
                       include_deleted: bool = False) -> Optional[TimeEvent]:
        """The event a work session produced at clock-out, if it was stored."""
        query = "SELECT * FROM time_events WHERE session_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with _storage_errors("read session event"):
            row = self.conn.execute(query + " LIMIT 1", (session_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def list_by_week(self, week_label: str) -> List[TimeEvent]:
        """Indexed lookup of live events stamped with week_label."""
        with _storage_errors("list week"):
            rows = self.conn.execute(
                "SELECT * FROM time_events WHERE week_label = ? AND deleted_at IS NULL "
                "ORDER BY start_instant",
                (week_label,),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def list_by_start_range(
        self,
        start: datetime,
        end: datetime,
        subject_id: Optional[str] = None,
    ) -> List[TimeEvent]:
        """Live events whose start_instant falls in [start, end)."""
        query = ("SELECT * FROM time_events WHERE start_instant >= ? AND start_instant < ? "
                 "AND deleted_at IS NULL")
        params: list = [to_iso(start), to_iso(end)]
        if subject_id is not None:
            query += " AND subject_id = ?"
            params.append(subject_id)
        query += " ORDER BY start_instant"
        with _storage_errors("list range"):
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def find_overlapping(
        self,
        subject_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[TimeEvent]:
        query = ("SELECT * FROM time_events WHERE subject_id = ? AND deleted_at IS NULL "
                 "AND start_instant < ? AND end_instant > ?")
        params: list = [subject_id, to_iso(end), to_iso(start)]
        if exclude_id is not None:
            query += " AND id != ?"
            params.append(exclude_id)
        with _storage_errors("overlap check"):
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def list(self, include_deleted: bool = False) -> List[TimeEvent]:
        """Full scan. Only for last-resort rebuilds and tooling."""
        query = "SELECT * FROM time_events"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        query += " ORDER BY start_instant"
        with _storage_errors("list events"):
            rows = self.conn.execute(query).fetchall()
        return [self._row_to_event(r) for r in rows]

    def audit_trail(self, event_id: str) -> List[Dict[str, Any]]:
        with _storage_errors("read audit"):
            rows = self.conn.execute(
                "SELECT * FROM audit_log WHERE entity = 'time_event' AND entity_id = ? "
                "ORDER BY id",
                (event_id,),
            ).fetchall()
        return [
            {
                "action": r["action"],
                "timestamp": from_iso(r["timestamp"]),
                "before": json.loads(r["before_json"]) if r["before_json"] else None,
                "after": json.loads(r["after_json"]) if r["after_json"] else None,
            }
            for r in rows
        ]

    # ── Internal ────────────────────────────────────────────────────────────

    def _get(self, event_id: str) -> Optional[TimeEvent]:
        row = self.conn.execute(
            "SELECT * FROM time_events WHERE id = ?", (event_id,)
        ).fetchone()
        return self._row_to_event(row) if row else None

    def _audit(self, entity: str, entity_id: str, action: str,
               before: Optional[dict], after: Optional[dict]) -> None:
        self.conn.execute(
            "INSERT INTO audit_log (entity, entity_id, action, timestamp, before_json, after_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (entity, entity_id, action, to_iso(utc_now()),
             _json(before) if before is not None else None,
             _json(after) if after is not None else None),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> TimeEvent:
        return TimeEvent(
            id=row["id"], subject_id=row["subject_id"], job_id=row["job_id"],
            task_id=row["task_id"],
            start_instant=from_iso(row["start_instant"]),
            end_instant=from_iso(row["end_instant"]),
            duration_minutes=row["duration_minutes"],
            week_label=row["week_label"],
            note=row["note"],
            billable=bool(row["billable"]),
            source=row["source"],
            session_id=row["session_id"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            deleted_at=from_iso(row["deleted_at"]),
        )


class SessionRepository:
    """Persistence for WorkSessions. Completed sessions stay as an archive."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def save(self, session: WorkSession) -> WorkSession:
        """Upsert the full session row (idempotent "set final state")."""
        with _storage_errors("save work session"), self.conn:
            self.conn.execute(
                """INSERT INTO work_sessions (
                    id, subject_id, job_id, clock_in_instant, clock_out_instant,
                    status, breaks_json, accumulated_break_ms, time_event_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    job_id = excluded.job_id,
                    clock_out_instant = excluded.clock_out_instant,
                    status = excluded.status,
                    breaks_json = excluded.breaks_json,
                    accumulated_break_ms = excluded.accumulated_break_ms,
                    time_event_id = excluded.time_event_id""",
                (
                    session.id, session.subject_id, session.job_id,
                    to_iso(session.clock_in_instant), to_iso(session.clock_out_instant),
                    session.status, _json(session.to_dict()["breaks"]),
                    session.accumulated_break_ms, session.time_event_id,
                ),
            )
        return session

    def get(self, session_id: str) -> Optional[WorkSession]:
        with _storage_errors("read work session"):
            row = self.conn.execute(
                "SELECT * FROM work_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_active(self, subject_id: str) -> Optional[WorkSession]:
        """The subject's non-completed session, if any."""
        with _storage_errors("read active session"):
            row = self.conn.execute(
                "SELECT * FROM work_sessions WHERE subject_id = ? AND status != ? "
                "ORDER BY clock_in_instant DESC LIMIT 1",
                (subject_id, SessionStatus.COMPLETED),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_for_subject(self, subject_id: str, limit: int = 500) -> List[WorkSession]:
        with _storage_errors("list work sessions"):
            rows = self.conn.execute(
                "SELECT * FROM work_sessions WHERE subject_id = ? "
                "ORDER BY clock_in_instant DESC LIMIT ?",
                (subject_id, limit),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> WorkSession:
        breaks = [
            BreakInterval(from_iso(b["start_instant"]), from_iso(b.get("end_instant")))
            for b in json.loads(row["breaks_json"] or "[]")
        ]
        return WorkSession(
            id=row["id"], subject_id=row["subject_id"], job_id=row["job_id"],
            clock_in_instant=from_iso(row["clock_in_instant"]),
            clock_out_instant=from_iso(row["clock_out_instant"]),
            status=row["status"],
            breaks=breaks,
            accumulated_break_ms=row["accumulated_break_ms"] or 0,
            time_event_id=row["time_event_id"],
        )


class KeyValueStore:
    """JSON values keyed by name. set() is an atomic whole-value replace."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, key: str) -> Optional[Any]:
        with _storage_errors(f"read {key}"):
            row = self.conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def set(self, key: str, value: Any) -> None:
        with _storage_errors(f"write {key}"), self.conn:
            self.conn.execute(
                "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, _json(value), to_iso(utc_now())),
            )

    def delete(self, key: str) -> None:
        with _storage_errors(f"delete {key}"), self.conn:
            self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))


def reset_all_data(conn: sqlite3.Connection) -> None:
    """Delete every row in every table. Callers must confirm first."""
    with _storage_errors("reset all data"), conn:
        for table in ["time_events", "work_sessions", "kv_store", "audit_log"]:
            conn.execute(f"DELETE FROM {table}")
    logger.warning("All data has been reset.")


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The only place raw SQL lives. Three small classes, one per concern:
#   EventLogStore (time events + audit), SessionRepository (work sessions),
#   KeyValueStore (whole-object blobs such as the stats snapshot).
#
# Key methods:
#   - EventLogStore.list_by_week(): indexed query used by recompute/backfill.
#   - EventLogStore.soft_delete(): sets deleted_at; rows are never removed.
#   - SessionRepository.save(): an upsert, so replaying it is harmless.
#   - KeyValueStore.set(): one upsert in one transaction = atomic replace.
#
# Interviewer-friendly talking points:
#   1. "with self.conn:" wraps each write and its audit row in one
#      transaction. Either both land or neither does.
#   2. sqlite3.Error → StorageError at this boundary. Services catch one
#      domain exception instead of knowing about SQLite.
#   3. IntegrityError is NOT a storage outage (it means "already exists"),
#      so it is surfaced as ValueError and never retried.
