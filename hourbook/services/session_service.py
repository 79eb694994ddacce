"""
Session Service — orchestrates the lifecycle of a work session.

Handles: clock in, breaks, clock out, and turning a finished session into
exactly one TimeEvent. Clock-out is two-phase: suspicious sessions come back
as "needs_confirmation" and nothing changes until the caller confirms.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from hourbook.data.models import (
    BreakInterval,
    OperationKind,
    QueuedWrite,
    SessionStatus,
    TargetKind,
    TimeEvent,
    WorkSession,
)
from hourbook.data.repository import SessionRepository
from hourbook.errors import SessionStateError, StorageError
from hourbook.services.notifications import Level, NotificationCenter, NotificationKind
from hourbook.services.session_validator import (
    SessionValidation,
    format_session_warning,
    round_half_up_minutes,
    validate,
)
from hourbook.services.state_store import Observable
from hourbook.services.time_log_service import Attempt, AttemptStatus, TimeLogService
from hourbook.services.write_queue import DurableWriteQueue

logger = logging.getLogger(__name__)


class SessionState:
    """Tracks the in-memory state of the current session."""
    IDLE = "idle"
    ACTIVE = SessionStatus.ACTIVE
    ON_BREAK = SessionStatus.ON_BREAK


@dataclass(frozen=True)
class SessionTimer:
    """What a running-timer display needs, republished on every tick."""
    session_id: Optional[str] = None
    elapsed_minutes: float = 0.0
    worked_minutes: float = 0.0
    on_break: bool = False


class SessionService:
    """
    Manages the lifecycle of work sessions.

    Only ONE session can be active per subject. State transitions:
        idle → active ↔ on_break → (clock out) → idle
    """

    def __init__(
        self,
        sessions: SessionRepository,
        time_log: TimeLogService,
        queue: DurableWriteQueue,
        settings_provider: Callable,
        clock,
        notifications: NotificationCenter,
    ) -> None:
        self.sessions = sessions
        self.time_log = time_log
        self.queue = queue
        self.settings_provider = settings_provider
        self.clock = clock
        self.notifications = notifications

        self.current_session: Optional[WorkSession] = None
        self.session_state: Observable[Optional[WorkSession]] = Observable(None)
        self.timer: Observable[SessionTimer] = Observable(SessionTimer())
        self._pending: Optional[WorkSession] = None
        self._pending_minutes = 0
        self._pending_validation: Optional[SessionValidation] = None

        queue.register_handler(TargetKind.WORK_SESSION, self._replay)

    @property
    def state(self) -> str:
        if self.current_session is None:
            return SessionState.IDLE
        return self.current_session.status

    @property
    def awaiting_confirmation(self) -> bool:
        return self._pending is not None

    # ── Startup ─────────────────────────────────────────────────────────────

    def restore(self) -> Optional[WorkSession]:
        """
        Pick up a session left running by a previous run of the app.

        Call after the write queue is loaded. A stored row can still say
        active although the session was clocked out: its event is stored or
        queued, and only the archive write is missing. Such a session is
        archived instead of restored.
        """
        active = self.sessions.get_active(self.settings_provider().subject_id)
        if active is not None:
            completed = self._completed_version(active)
            if completed is not None:
                logger.warning("Session %s was already clocked out; archiving instead of restoring",
                               active.id)
                self._archive_stale(completed)
                active = None
        if active is not None:
            logger.info("Restored %s session %s (clocked in %s)",
                        active.status, active.id, active.clock_in_instant.isoformat())
        self._set_current(active)
        return active

    # ── Session lifecycle ───────────────────────────────────────────────────

    def clock_in(self, job_id: str) -> WorkSession:
        """Start a new work session."""
        subject_id = self.settings_provider().subject_id
        if self.current_session is not None:
            raise SessionStateError("A session is already active.")
        try:
            stored = self.sessions.get_active(subject_id)
        except StorageError as exc:
            # Only the in-memory check applies; the new row is queued below.
            logger.warning("Active-session check skipped, storage unavailable: %s", exc)
            stored = None
        if stored is not None and self._completed_version(stored) is None:
            raise SessionStateError("A session is already active.")
        session = WorkSession(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            job_id=job_id,
            clock_in_instant=self.clock.now(),
            status=SessionStatus.ACTIVE,
        )
        self._save(session)
        self._set_current(session)
        logger.info("Session %s started for job %s", session.id, job_id)
        return session

    def start_break(self) -> WorkSession:
        self._require_state(SessionState.ACTIVE, "start a break")
        session = self.current_session.copy()
        session.breaks.append(BreakInterval(self.clock.now()))
        session.status = SessionStatus.ON_BREAK
        self._save(session)
        self._set_current(session)
        return session

    def end_break(self) -> WorkSession:
        self._require_state(SessionState.ON_BREAK, "end a break")
        session = self.current_session.copy()
        self._close_break(session)
        session.status = SessionStatus.ACTIVE
        self._save(session)
        self._set_current(session)
        return session

    def clock_out(self) -> Attempt:
        """
        First phase of clock-out.

        Works on a finalized copy; the live session is only replaced once the
        resulting TimeEvent has been written or queued.
        """
        if self.current_session is None:
            raise SessionStateError("No active session to clock out of.")
        self._pending = None

        now = self.clock.now()
        finalized = self.current_session.copy()
        if finalized.open_break is not None:
            self._close_break(finalized, now)
        finalized.clock_out_instant = now

        elapsed_ms = (now - finalized.clock_in_instant).total_seconds() * 1000
        work_ms = max(0, elapsed_ms - finalized.accumulated_break_ms)
        minutes = round_half_up_minutes(work_ms)
        verdict = validate(finalized.clock_in_instant, now, self.settings_provider().max_session_hours)

        if verdict.blocked:
            message = "Clock-out time is before clock-in time. Check your system clock."
            self.notifications.notify(NotificationKind.VALIDATION_BLOCKED, message,
                                      level=Level.WARNING, data={"reason": verdict.reason})
            return Attempt(AttemptStatus.BLOCKED, {"validation": verdict}, message)

        if not verdict.valid or minutes == 0:
            if not verdict.valid:
                message = format_session_warning(verdict.hours, verdict.exceeds_by_hours)
            else:
                message = "This session recorded 0 minutes of work. Save it anyway?"
            self._pending = finalized
            self._pending_minutes = minutes
            self._pending_validation = verdict
            self.notifications.notify(
                NotificationKind.CONFIRMATION_REQUIRED, message, level=Level.WARNING,
                data={"reason": verdict.reason or "zero_duration", "minutes": minutes},
            )
            return Attempt(AttemptStatus.NEEDS_CONFIRMATION,
                           {"validation": verdict, "minutes": minutes}, message)

        return self._finish(finalized, minutes, verdict)

    def confirm_and_proceed(self) -> Attempt:
        """Second phase: save the clock-out that was waiting for confirmation."""
        if self._pending is None:
            raise SessionStateError("No clock-out is awaiting confirmation.")
        logger.info("Clock-out of %s confirmed by user", self._pending.id)
        return self._finish(self._pending, self._pending_minutes, self._pending_validation)

    def decline(self) -> None:
        """Abandon the pending clock-out; the session carries on untouched."""
        if self._pending is not None:
            logger.info("Clock-out of %s declined; session continues", self._pending.id)
        self._pending = None
        self._pending_validation = None
        self._pending_minutes = 0

    # ── Helpers ─────────────────────────────────────────────────────────────

    def get_elapsed_minutes(self, now: Optional[datetime] = None) -> float:
        """Minutes since clock-in, breaks included."""
        if self.current_session is None:
            return 0.0
        now = now or self.clock.now()
        return (now - self.current_session.clock_in_instant).total_seconds() / 60.0

    def get_worked_minutes(self, now: Optional[datetime] = None) -> float:
        """Minutes since clock-in minus finished breaks and any open break."""
        session = self.current_session
        if session is None:
            return 0.0
        now = now or self.clock.now()
        break_ms = session.accumulated_break_ms
        if session.open_break is not None:
            break_ms += (now - session.open_break.start_instant).total_seconds() * 1000
        worked_ms = (now - session.clock_in_instant).total_seconds() * 1000 - break_ms
        return max(0.0, worked_ms / 60000.0)

    def on_tick(self, now: datetime) -> None:
        """Ticker callback: republish the running timer."""
        if self.current_session is None and self.timer.get().session_id is None:
            return
        self._publish_timer(now)

    def _publish_timer(self, now: datetime) -> None:
        session = self.current_session
        if session is None:
            self.timer.set(SessionTimer())
            return
        self.timer.set(SessionTimer(
            session_id=session.id,
            elapsed_minutes=self.get_elapsed_minutes(now),
            worked_minutes=self.get_worked_minutes(now),
            on_break=session.status == SessionStatus.ON_BREAK,
        ))

    # ── Clock-out internals ─────────────────────────────────────────────────

    def _finish(self, finalized: WorkSession, minutes: int,
                verdict: Optional[SessionValidation]) -> Attempt:
        finalized.status = SessionStatus.COMPLETED
        existing = self._stored_event(finalized.id)
        if existing is not None:
            # A previous clock-out already wrote this session's event.
            logger.warning("Session %s already has event %s; archiving only",
                           finalized.id, existing.id)
            finalized.time_event_id = existing.id
            attempt = Attempt(AttemptStatus.OK, {"event": existing})
        else:
            event = self.time_log.build_event(
                finalized.job_id,
                finalized.clock_in_instant,
                finalized.clock_out_instant,
                duration_minutes=minutes,
                source="timer",
                session_id=finalized.id,
            )
            finalized.time_event_id = event.id
            # Raises only if the event could be neither written nor queued.
            attempt = self.time_log.commit_create(event)

        try:
            self._save(finalized)
        except StorageError:
            # The event is safe; restore() archives the session on next start.
            logger.exception("Completed session %s could not be archived", finalized.id)

        self._pending = None
        self._pending_validation = None
        self._pending_minutes = 0
        self._set_current(None)
        attempt.details.update({"session": finalized, "minutes": minutes, "validation": verdict})
        logger.info("Session %s clocked out: %d min (%s)", finalized.id, minutes, attempt.status)
        return attempt

    def _stored_event(self, session_id: str) -> Optional[TimeEvent]:
        try:
            return self.time_log.events.get_by_session(session_id, include_deleted=True)
        except StorageError as exc:
            logger.warning("Could not look up event for session %s: %s", session_id, exc)
            return None

    def _completed_version(self, session: WorkSession) -> Optional[WorkSession]:
        """The clocked-out form of session, if its clock-out already happened."""
        queued = self._queued_completion(session.id)
        if queued is not None:
            return queued
        queued_event = None
        for item in self.queue.items:
            if (item.target_kind == TargetKind.TIME_EVENT
                    and item.operation_kind == OperationKind.CREATE
                    and item.payload.get("session_id") == session.id):
                queued_event = TimeEvent.from_dict(item.payload)
                break

        event = queued_event or self._stored_event(session.id)
        if event is None:
            return None
        completed = session.copy()
        if completed.open_break is not None:
            self._close_break(completed, event.end_instant)
        completed.clock_out_instant = event.end_instant
        completed.status = SessionStatus.COMPLETED
        completed.time_event_id = event.id
        return completed

    def _queued_completion(self, session_id: str) -> Optional[WorkSession]:
        for item in reversed(self.queue.items):
            if (item.target_kind == TargetKind.WORK_SESSION
                    and item.payload.get("id") == session_id
                    and item.payload.get("status") == SessionStatus.COMPLETED):
                return WorkSession.from_dict(item.payload)
        return None

    def _archive_stale(self, completed: WorkSession) -> None:
        try:
            self.sessions.save(completed)
            return
        except StorageError as exc:
            logger.warning("Archiving stale session %s failed (%s)", completed.id, exc)
        if self._queued_completion(completed.id) is not None:
            return  # the queued archive lands on a later retry
        try:
            self.queue.enqueue(TargetKind.WORK_SESSION, OperationKind.UPDATE, completed.to_dict())
        except StorageError:
            logger.exception("Stale session %s could not be queued for archiving", completed.id)

    def _save(self, session: WorkSession) -> None:
        """Persist the session row, or queue the upsert if storage is down."""
        try:
            self.sessions.save(session)
        except StorageError as exc:
            logger.warning("Saving session %s failed (%s); queueing", session.id, exc)
            self.queue.enqueue(TargetKind.WORK_SESSION, OperationKind.UPDATE, session.to_dict())

    def _replay(self, item: QueuedWrite) -> None:
        session = WorkSession.from_dict(item.payload)
        stored = self.sessions.get(session.id)
        if (stored is not None and stored.status == SessionStatus.COMPLETED
                and session.status != SessionStatus.COMPLETED):
            logger.info("Skipping stale update for completed session %s", session.id)
            return
        self.sessions.save(session)

    def _close_break(self, session: WorkSession, at=None) -> None:
        brk = session.open_break
        if brk is None:
            return
        brk.end_instant = at or self.clock.now()
        session.accumulated_break_ms += brk.duration_ms()

    def _set_current(self, session: Optional[WorkSession]) -> None:
        self.current_session = session
        self.session_state.set(session)
        self._publish_timer(self.clock.now())

    def _require_state(self, expected: str, action: str) -> None:
        if self.current_session is None:
            raise SessionStateError("No active session.")
        if self.state != expected:
            raise SessionStateError(
                f"Cannot {action}: current state is '{self.state}', "
                f"expected '{expected}'."
            )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The state machine for the work flow: clock in → breaks → clock out. At
#   clock-out the session becomes one TimeEvent and is archived.
#
# Key classes:
#   - SessionState: constants for idle / active / on_break.
#   - SessionTimer: elapsed and worked minutes for a live display.
#   - SessionService: enforces valid transitions; two-phase clock-out.
#
# Data flow:
#   clock_out() → copy session, close open break, compute worked minutes →
#   validator says ok / too long / impossible → ok: TimeLogService writes
#   the event (or queues it) → session archived → in-memory state cleared.
#
# Interviewer-friendly talking points:
#   1. Every mutation works on a copy and swaps it in at the end, so a
#      failure half-way never leaves a half-updated session in memory.
#   2. "Declining" a confirmation is free: nothing was changed yet, so there
#      is nothing to roll back.
#   3. In-memory state is cleared only after the event is stored OR queued.
#      If even the queue can't be saved, the exception propagates and the
#      user still sees their running session.
#   4. One session, one event: clock-out reuses an event already stored for
#      the session, and restore() archives a row whose event exists instead
#      of bringing it back as active.
#   5. on_tick() republishes elapsed/worked minutes through `timer` every
#      second while a session runs.
