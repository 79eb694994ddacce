"""
Time Log Service — every change to the event log goes through here.

One method per user-level change (add entry, correct entry, edit note,
delete entry). Each one writes the event log first and only then updates
the weekly stats. If storage is unavailable the change is queued for retry,
and the stats move when the retry lands, never before.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from hourbook.data.models import (
    OperationKind,
    QueuedWrite,
    TargetKind,
    TimeEvent,
    from_iso,
    to_iso,
)
from hourbook.data.repository import EventLogStore
from hourbook.errors import EventNotFound, InvalidTimeRange, OverlapError, StorageError
from hourbook.services.aggregation_service import AggregationCache, ChangeKind
from hourbook.services.notifications import Level, NotificationCenter, NotificationKind
from hourbook.services.session_validator import (
    format_session_warning,
    round_half_up_minutes,
    validate,
)
from hourbook.services.write_queue import DurableWriteQueue

logger = logging.getLogger(__name__)


class AttemptStatus:
    BLOCKED = "blocked"
    NEEDS_CONFIRMATION = "needs_confirmation"
    OK = "ok"
    QUEUED = "queued"


@dataclass
class Attempt:
    """Outcome of a user action that may need a second, confirming step."""
    status: str
    details: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.status in (AttemptStatus.OK, AttemptStatus.QUEUED)


class TimeLogService:
    def __init__(
        self,
        events: EventLogStore,
        cache: AggregationCache,
        queue: DurableWriteQueue,
        settings_provider: Callable,
        clock,
        notifications: NotificationCenter,
    ) -> None:
        self.events = events
        self.cache = cache
        self.queue = queue
        self.settings_provider = settings_provider
        self.clock = clock
        self.notifications = notifications
        queue.register_handler(TargetKind.TIME_EVENT, self._replay)

    # ── Building events ─────────────────────────────────────────────────────

    def build_event(
        self,
        job_id: str,
        start: datetime,
        end: datetime,
        duration_minutes: Optional[int] = None,
        source: str = "manual",
        session_id: Optional[str] = None,
        note: Optional[str] = None,
        task_id: Optional[str] = None,
        billable: bool = True,
    ) -> TimeEvent:
        """A new TimeEvent with its label derived from start under current settings."""
        if end <= start:
            raise InvalidTimeRange(f"End {end.isoformat()} is not after start {start.isoformat()}")
        if duration_minutes is None:
            duration_minutes = round_half_up_minutes((end - start).total_seconds() * 1000)
        if duration_minutes < 0:
            raise ValueError("duration_minutes cannot be negative")
        settings = self.settings_provider()
        return TimeEvent(
            id=uuid.uuid4().hex,
            subject_id=settings.subject_id,
            job_id=job_id,
            start_instant=start,
            end_instant=end,
            duration_minutes=duration_minutes,
            week_label=self.cache.label_for(start),
            task_id=task_id,
            note=note,
            billable=billable,
            source=source,
            session_id=session_id,
        )

    # ── Commit boundary ─────────────────────────────────────────────────────

    def commit_create(self, event: TimeEvent) -> Attempt:
        """Write event, then apply its delta; on storage failure queue it instead."""
        try:
            self.events.create(event)
        except StorageError as exc:
            item = self._queue(OperationKind.CREATE, event.to_dict(), exc)
            return Attempt(AttemptStatus.QUEUED, {"event": event, "queued_item": item},
                           "Saved offline; will sync when storage is available.")
        self._apply_change(ChangeKind.CREATE, event)
        return Attempt(AttemptStatus.OK, {"event": event})

    # ── Manual entries ──────────────────────────────────────────────────────

    def add_manual_entry(
        self,
        job_id: str,
        start: datetime,
        end: datetime,
        note: Optional[str] = None,
        task_id: Optional[str] = None,
        billable: bool = True,
        confirmed: bool = False,
    ) -> Attempt:
        """
        Validate and record a hand-entered block of time.

        Returns blocked for an end before the start, and needs_confirmation
        for a suspiciously long entry unless confirmed=True. Raises
        OverlapError if it collides with an existing entry.
        """
        settings = self.settings_provider()
        verdict = validate(start, end, settings.max_session_hours)
        if verdict.blocked:
            message = "End time must be after start time."
            self.notifications.notify(NotificationKind.VALIDATION_BLOCKED, message,
                                      level=Level.WARNING, data={"reason": verdict.reason})
            return Attempt(AttemptStatus.BLOCKED, {"validation": verdict}, message)
        if not verdict.valid and not confirmed:
            message = format_session_warning(verdict.hours, verdict.exceeds_by_hours)
            self.notifications.notify(NotificationKind.CONFIRMATION_REQUIRED, message,
                                      level=Level.WARNING, data={"reason": verdict.reason})
            return Attempt(AttemptStatus.NEEDS_CONFIRMATION, {"validation": verdict}, message)

        self._check_overlap(settings.subject_id, start, end)
        event = self.build_event(job_id, start, end, verdict.minutes, "manual",
                                 note=note, task_id=task_id, billable=billable)
        attempt = self.commit_create(event)
        attempt.details["validation"] = verdict
        logger.info("Manual entry %s: %s, %d min (%s)",
                    event.id, job_id, event.duration_minutes, attempt.status)
        return attempt

    # ── Changes to existing entries ─────────────────────────────────────────

    def update_note(self, event_id: str, note: Optional[str]) -> Attempt:
        """Annotation only; weekly totals are untouched."""
        return self._update(event_id, {"note": note})

    def correct_entry(
        self,
        event_id: str,
        job_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Attempt:
        """
        Fix the job or the times of an entry, moving its minutes accordingly.

        The entry is read before anything is written, so a storage outage at
        that point raises StorageError instead of queueing the correction.
        """
        existing = self.events.get_by_id(event_id)
        if existing is None:
            raise EventNotFound(event_id)
        new_start = start or existing.start_instant
        new_end = end or existing.end_instant
        if new_end <= new_start:
            raise InvalidTimeRange("End time must be after start time.")
        patch: Dict[str, Any] = {}
        if job_id is not None and job_id != existing.job_id:
            patch["job_id"] = job_id
        if new_start != existing.start_instant or new_end != existing.end_instant:
            self._check_overlap(existing.subject_id, new_start, new_end, exclude_id=event_id)
            patch["start_instant"] = new_start
            patch["end_instant"] = new_end
            patch["duration_minutes"] = round_half_up_minutes(
                (new_end - new_start).total_seconds() * 1000)
            patch["week_label"] = self.cache.label_for(new_start)
        if not patch:
            return Attempt(AttemptStatus.OK, {"event": existing})
        return self._update(event_id, patch)

    def delete_event(self, event_id: str) -> Attempt:
        """Soft delete. Like corrections, raises StorageError if the entry can't be read."""
        existing = self.events.get_by_id(event_id)
        if existing is None:
            raise EventNotFound(event_id)
        try:
            self.events.soft_delete(event_id)
        except StorageError as exc:
            item = self._queue(OperationKind.DELETE, {"id": event_id}, exc)
            return Attempt(AttemptStatus.QUEUED, {"queued_item": item})
        self._apply_change(ChangeKind.DELETE, existing)
        return Attempt(AttemptStatus.OK, {"event": existing})

    # ── Internal ────────────────────────────────────────────────────────────

    def _apply_change(self, kind: str, event: TimeEvent,
                      old: Optional[TimeEvent] = None) -> None:
        # The event is already stored; a stats failure here must not look
        # like a failed write to the caller.
        try:
            self.cache.on_event_changed(kind, event, old)
        except StorageError:
            logger.exception("Stats update for event %s failed; a recompute will repair it",
                             event.id)

    def _update(self, event_id: str, patch: Dict[str, Any]) -> Attempt:
        # Needs the stored row for the delta; only the write itself is queued.
        old = self.events.get_by_id(event_id)
        if old is None:
            raise EventNotFound(event_id)
        try:
            new = self.events.update(event_id, patch)
        except StorageError as exc:
            item = self._queue(OperationKind.UPDATE,
                               {"id": event_id, "patch": _encode_patch(patch)}, exc)
            return Attempt(AttemptStatus.QUEUED, {"queued_item": item})
        if _touches_totals(patch):
            self._apply_change(ChangeKind.UPDATE, new, old)
        return Attempt(AttemptStatus.OK, {"event": new})

    def _check_overlap(self, subject_id: str, start: datetime, end: datetime,
                       exclude_id: Optional[str] = None) -> None:
        try:
            clashes = self.events.find_overlapping(subject_id, start, end, exclude_id)
        except StorageError as exc:
            # Offline: the entry is still queued, just without the overlap guard.
            logger.warning("Overlap check skipped, storage unavailable: %s", exc)
            return
        if clashes:
            other = clashes[0]
            raise OverlapError(
                f"Overlaps entry {other.id} ({other.start_instant.isoformat()} – "
                f"{other.end_instant.isoformat()})",
                other.id,
            )

    def _queue(self, operation_kind: str, payload: Dict[str, Any],
               cause: Exception) -> QueuedWrite:
        logger.warning("Time event %s failed (%s); queueing for retry", operation_kind, cause)
        item = self.queue.enqueue(TargetKind.TIME_EVENT, operation_kind, payload)
        self.notifications.notify(
            NotificationKind.WRITE_QUEUED,
            "Storage is unavailable. Your change was saved offline and will sync automatically.",
            level=Level.WARNING,
            data={"item_id": item.id, "operation": operation_kind},
        )
        return item

    def _replay(self, item: QueuedWrite) -> None:
        """Queue handler. Safe to run more than once for the same item."""
        if item.operation_kind == OperationKind.CREATE:
            event = TimeEvent.from_dict(item.payload)
            if self.events.get_by_id(event.id, include_deleted=True) is not None:
                logger.info("Queued event %s already stored; skipping", event.id)
                return
            self.events.create(event)
            self._apply_change(ChangeKind.CREATE, event)
        elif item.operation_kind == OperationKind.UPDATE:
            old = self.events.get_by_id(item.payload["id"])
            if old is None:
                logger.info("Queued update for missing event %s dropped", item.payload["id"])
                return
            patch = _decode_patch(item.payload["patch"])
            new = self.events.update(old.id, patch)
            if _touches_totals(patch):
                self._apply_change(ChangeKind.UPDATE, new, old)
        elif item.operation_kind == OperationKind.DELETE:
            old = self.events.get_by_id(item.payload["id"])
            if old is None:
                return
            self.events.soft_delete(old.id)
            self._apply_change(ChangeKind.DELETE, old)
        else:
            raise ValueError(f"Unknown operation '{item.operation_kind}'")


_TOTAL_FIELDS = {"job_id", "duration_minutes", "week_label", "start_instant", "end_instant"}
_TIME_FIELDS = {"start_instant", "end_instant"}


def _touches_totals(patch: Dict[str, Any]) -> bool:
    return bool(_TOTAL_FIELDS & set(patch))


def _encode_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (to_iso(v) if k in _TIME_FIELDS else v)
            for k, v in patch.items()}


def _decode_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (from_iso(v) if k in _TIME_FIELDS else v) for k, v in patch.items()}


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The unit of work for the event log: write the event, then move the
#   weekly totals. Everything that changes time entries comes through here.
#
# Key points:
#   - Order matters. The delta is applied only after the write succeeded
#     (directly, or later when the retry queue replays it). The stats can
#     never count an entry that isn't stored.
#   - Storage failure → QueuedWrite + one "saved offline" notification.
#     Validation failures are NOT queued; they go back to the caller.
#   - The replay handler is idempotent: a create that already landed is
#     skipped, a delete of an already-deleted entry is a no-op.
#
# Interviewer-friendly talking points:
#   1. Attempt objects instead of exceptions for expected outcomes
#      ("needs confirmation" is not an error).
#   2. Corrections recompute duration AND week label from the new start,
#      then the cache moves minutes out of the old week and into the new.
#   3. Note edits skip the cache entirely since they can't change totals.
