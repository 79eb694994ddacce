"""
SQLite database initialization and connection management.

Single responsibility: own the connection, create tables, run migrations.
All actual queries live in repository.py.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default DB lives next to the repo root
DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "hourbook.db"

SCHEMA_SQL = """
-- Time events (source of truth) ----------------------------------------------
CREATE TABLE IF NOT EXISTS time_events (
    id                TEXT    PRIMARY KEY,
    subject_id        TEXT    NOT NULL,
    job_id            TEXT    NOT NULL,
    task_id           TEXT,
    start_instant     TEXT    NOT NULL,
    end_instant       TEXT    NOT NULL,
    duration_minutes  INTEGER NOT NULL CHECK (duration_minutes >= 0),
    week_label        TEXT    NOT NULL,
    note              TEXT,
    billable          INTEGER NOT NULL DEFAULT 1,
    source            TEXT    NOT NULL DEFAULT 'manual',
    session_id        TEXT,
    created_at        TEXT    NOT NULL,
    updated_at        TEXT    NOT NULL,
    deleted_at        TEXT
);

-- Work sessions (archived, never deleted) ------------------------------------
CREATE TABLE IF NOT EXISTS work_sessions (
    id                    TEXT    PRIMARY KEY,
    subject_id            TEXT    NOT NULL,
    job_id                TEXT    NOT NULL,
    clock_in_instant      TEXT    NOT NULL,
    clock_out_instant     TEXT,
    status                TEXT    NOT NULL,
    breaks_json           TEXT    NOT NULL DEFAULT '[]',
    accumulated_break_ms  INTEGER NOT NULL DEFAULT 0,
    time_event_id         TEXT
);

-- Key/value blobs (snapshot cache, write queue, settings) --------------------
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT    PRIMARY KEY,
    value       TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL
);

-- Audit trail ----------------------------------------------------------------
CREATE TABLE IF NOT EXISTS audit_log (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    entity       TEXT    NOT NULL,
    entity_id    TEXT    NOT NULL,
    action       TEXT    NOT NULL,
    timestamp    TEXT    NOT NULL,
    before_json  TEXT,
    after_json   TEXT
);

-- Indexes for common queries -------------------------------------------------
CREATE INDEX IF NOT EXISTS idx_events_week      ON time_events(week_label);
CREATE INDEX IF NOT EXISTS idx_events_start     ON time_events(start_instant);
CREATE INDEX IF NOT EXISTS idx_events_subject   ON time_events(subject_id);
CREATE INDEX IF NOT EXISTS idx_sessions_status  ON work_sessions(subject_id, status);
CREATE INDEX IF NOT EXISTS idx_events_session   ON time_events(session_id);
CREATE INDEX IF NOT EXISTS idx_audit_entity     ON audit_log(entity, entity_id);
"""


def connect_memory() -> sqlite3.Connection:
    """An in-memory connection with the full schema, for tests and tooling."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    return conn


class Database:
    """Thin wrapper around a SQLite connection."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.conn: Optional[sqlite3.Connection] = None

    # -- lifecycle -----------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open (or return existing) connection and ensure schema exists."""
        if self.conn is not None:
            return self.conn
        logger.info("Connecting to SQLite at %s", self.db_path)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row          # dict-like rows
        self.conn.execute("PRAGMA journal_mode=WAL")  # atomic commits, readers don't block
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self.conn

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed.")

    # -- internal ------------------------------------------------------------

    def _create_tables(self) -> None:
        assert self.conn is not None
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        logger.info("Database schema ensured.")


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Manages the SQLite connection and makes sure all tables exist on startup.
#
# Key pieces:
#   - SCHEMA_SQL: the full DDL. CREATE IF NOT EXISTS makes it idempotent,
#     safe to run every launch.
#   - idx_events_week: the index behind list_by_week(). Recompute and
#     backfill hit it once per week instead of scanning every event.
#   - kv_store: one row per cached object. An upsert inside a transaction is
#     an atomic whole-value replace, which is all the snapshot cache and the
#     retry queue need from "persistence".
#
# Interviewer-friendly talking points:
#   1. WAL mode: a crash mid-commit rolls back to the last complete commit.
#   2. Soft deletes (deleted_at) plus audit_log keep the full history; rows
#      in time_events are never physically removed.
#   3. Schema in code rather than a migration tool: single-user local app.
