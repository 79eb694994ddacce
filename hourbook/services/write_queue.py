"""
Durable Write Queue — at-least-once delivery for writes that failed.

When a state-changing write (a clock-out, a snapshot save) cannot reach
storage, it is parked here instead of being lost. The whole queue is saved
to the key/value table on every change, retried with exponential backoff
on each tick, and either succeeds or ends up in the dead-letter list with a
persistent notification. Nothing is ever dropped silently.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from hourbook.data.models import QueuedWrite, to_iso
from hourbook.data.repository import KeyValueStore
from hourbook.errors import StorageError
from hourbook.services.notifications import Level, NotificationCenter, NotificationKind
from hourbook.services.state_store import Observable

logger = logging.getLogger(__name__)

QUEUE_KEY = "write_queue"
DEAD_LETTER_KEY = "write_queue_dead_letters"

DEFAULT_INITIAL_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 60.0
DEFAULT_MAX_ATTEMPTS = 5
RESTORE_RETRY_DELAY_S = 2.0

Handler = Callable[[QueuedWrite], None]


@dataclass(frozen=True)
class QueueState:
    size: int = 0
    syncing: bool = False
    last_sync_attempt: Optional[datetime] = None
    last_successful_sync: Optional[datetime] = None


@dataclass(frozen=True)
class FlushResult:
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0


def backoff_delay(attempt_count: int, initial_s: float = DEFAULT_INITIAL_DELAY_S,
                  max_s: float = DEFAULT_MAX_DELAY_S) -> float:
    """Seconds to wait before the next attempt: initial * 2^attempts, capped."""
    return min(initial_s * (2 ** attempt_count), max_s)


class DurableWriteQueue:
    """
    Persisted FIFO of QueuedWrites, replayed through per-kind handlers.

    Handlers must be idempotent (create-if-absent, upsert final state), since
    a write that actually landed but reported failure will be replayed.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        clock,
        notifications: NotificationCenter,
        initial_delay_s: float = DEFAULT_INITIAL_DELAY_S,
        max_delay_s: float = DEFAULT_MAX_DELAY_S,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        on_permanent_failure: Optional[Callable[[QueuedWrite], None]] = None,
    ) -> None:
        self.kv = kv
        self.clock = clock
        self.notifications = notifications
        self.initial_delay_s = initial_delay_s
        self.max_delay_s = max_delay_s
        self.max_attempts = max_attempts
        self.on_permanent_failure = on_permanent_failure

        self.items: List[QueuedWrite] = []
        self.state: Observable[QueueState] = Observable(QueueState())
        self._handlers: Dict[str, Handler] = {}
        self._flushing = False

    # ── Setup ───────────────────────────────────────────────────────────────

    def register_handler(self, target_kind: str, handler: Handler) -> None:
        self._handlers[target_kind] = handler

    def configure(self, initial_delay_s: float, max_delay_s: float, max_attempts: int) -> None:
        self.initial_delay_s = initial_delay_s
        self.max_delay_s = max_delay_s
        self.max_attempts = max_attempts

    def load(self) -> int:
        """Restore persisted items; schedule the first retry shortly after start."""
        stored = self.kv.get(QUEUE_KEY) or []
        self.items = [QueuedWrite.from_dict(d) for d in stored]
        if self.items:
            first_retry = self.clock.now() + timedelta(seconds=RESTORE_RETRY_DELAY_S)
            for item in self.items:
                item.next_attempt_at = first_retry
            logger.info("Restored %d queued write(s); retrying at %s",
                        len(self.items), to_iso(first_retry))
        self._publish()
        return len(self.items)

    # ── Enqueue ─────────────────────────────────────────────────────────────

    def enqueue(self, target_kind: str, operation_kind: str,
                payload: Dict[str, Any]) -> QueuedWrite:
        """Append and persist. Raises StorageError if the queue can't be saved."""
        now = self.clock.now()
        item = QueuedWrite(
            id=uuid.uuid4().hex,
            target_kind=target_kind,
            operation_kind=operation_kind,
            payload=dict(payload),
            enqueued_at=now,
            attempt_count=0,
            next_attempt_at=now + timedelta(seconds=self._delay_for(0)),
        )
        self.items.append(item)
        try:
            self._persist()
        except Exception:
            self.items.remove(item)
            logger.error("Could not persist write queue; %s %s not queued",
                         target_kind, operation_kind)
            raise
        logger.info("Queued %s %s (%s); queue size %d",
                    operation_kind, target_kind, item.id, len(self.items))
        self._publish()
        return item

    # ── Processing ──────────────────────────────────────────────────────────

    def run_due(self, now: Optional[datetime] = None) -> FlushResult:
        """Attempt only items whose next_attempt_at has passed. Called per tick."""
        now = now or self.clock.now()
        due = [i.id for i in self.items if i.next_attempt_at is None or i.next_attempt_at <= now]
        if not due:
            return FlushResult()
        return self._process(set(due))

    def flush(self) -> FlushResult:
        """Attempt every queued item now, oldest first, and report the outcome."""
        result = self._process(None)
        if result.succeeded or result.failed or result.exhausted:
            self.notifications.notify(
                NotificationKind.FLUSH_SUMMARY,
                f"Synced {result.succeeded}, failed {result.failed}, "
                f"gave up on {result.exhausted}.",
                level=Level.INFO if not (result.failed or result.exhausted) else Level.WARNING,
                data={"succeeded": result.succeeded, "failed": result.failed,
                      "exhausted": result.exhausted},
            )
        return result

    def clear(self) -> int:
        """Drop every pending item (operator action). Returns how many were dropped."""
        dropped = len(self.items)
        self.items = []
        self._persist()
        self._publish()
        logger.warning("Write queue cleared (%d item(s) dropped)", dropped)
        return dropped

    def dead_letters(self) -> List[Dict[str, Any]]:
        return list(self.kv.get(DEAD_LETTER_KEY) or [])

    def has_pending(self, target_kind: str) -> bool:
        return any(i.target_kind == target_kind for i in self.items)

    @property
    def size(self) -> int:
        return len(self.items)

    # ── Internal ────────────────────────────────────────────────────────────

    def _process(self, only_ids: Optional[set]) -> FlushResult:
        if self._flushing:
            logger.debug("Flush already in progress; skipping")
            return FlushResult()
        self._flushing = True
        succeeded = failed = exhausted = 0
        self._publish(syncing=True, last_sync_attempt=self.clock.now())
        try:
            for item in list(self.items):
                if only_ids is not None and item.id not in only_ids:
                    continue
                if self._attempt(item):
                    succeeded += 1
                elif item in self.items:
                    failed += 1
                else:
                    exhausted += 1
            try:
                self._persist()
            except StorageError as exc:
                # Items stay in memory; the next successful pass persists them.
                logger.warning("Could not persist write queue after pass: %s", exc)
        finally:
            self._flushing = False
            extra = {"last_successful_sync": self.clock.now()} if succeeded else {}
            self._publish(syncing=False, **extra)
        if succeeded or failed or exhausted:
            logger.info("Queue pass: %d ok, %d failed, %d exhausted, %d left",
                        succeeded, failed, exhausted, len(self.items))
        return FlushResult(succeeded, failed, exhausted)

    def _attempt(self, item: QueuedWrite) -> bool:
        item.attempt_count += 1
        handler = self._handlers.get(item.target_kind)
        try:
            if handler is None:
                raise LookupError(f"No handler registered for {item.target_kind}")
            handler(item)
        except Exception as exc:
            item.last_error = f"{type(exc).__name__}: {exc}"
            logger.warning("Queued %s %s failed (attempt %d/%d): %s",
                           item.operation_kind, item.target_kind,
                           item.attempt_count, self.max_attempts, item.last_error)
            if item.attempt_count >= self.max_attempts:
                self._exhaust(item)
            else:
                item.next_attempt_at = self.clock.now() + timedelta(
                    seconds=self._delay_for(item.attempt_count))
            return False
        self.items.remove(item)
        logger.info("Queued %s %s (%s) written after %d attempt(s)",
                    item.operation_kind, item.target_kind, item.id, item.attempt_count)
        return True

    def _exhaust(self, item: QueuedWrite) -> None:
        try:
            letters = self.dead_letters()
            letters.append({**item.to_dict(), "failed_at": to_iso(self.clock.now())})
            self.kv.set(DEAD_LETTER_KEY, letters)
        except StorageError as exc:
            # Keep the item until its dead letter can be recorded.
            logger.error("Could not record dead letter for %s: %s", item.id, exc)
            item.next_attempt_at = self.clock.now() + timedelta(seconds=self.max_delay_s)
            return
        self.items.remove(item)
        logger.error("Giving up on %s %s (%s) after %d attempts",
                     item.operation_kind, item.target_kind, item.id, item.attempt_count)
        self.notifications.notify(
            NotificationKind.WRITE_FAILED_PERMANENTLY,
            f"A {item.target_kind} change could not be saved after "
            f"{item.attempt_count} attempts: {item.last_error}",
            level=Level.ERROR,
            persistent=True,
            data={"item": item.to_dict()},
        )
        if self.on_permanent_failure is not None:
            self.on_permanent_failure(item)

    def _delay_for(self, attempt_count: int) -> float:
        return backoff_delay(attempt_count, self.initial_delay_s, self.max_delay_s)

    def _persist(self) -> None:
        self.kv.set(QUEUE_KEY, [i.to_dict() for i in self.items])

    def _publish(self, **changes: Any) -> None:
        self.state.set(replace(self.state.get(), size=len(self.items), **changes))


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   A small outbox. Failed writes become QueuedWrite records, saved to the
#   key/value table immediately, then replayed by kind-specific handlers.
#
# Lifecycle of one item:
#   enqueue (attempt_count=0, due in 1 s) → tick finds it due → handler runs
#   → success: removed | failure: attempt_count+1, due in 2^n s (max 60 s)
#   → after 5 attempts: dead letter + persistent notification.
#
# Interviewer-friendly talking points:
#   1. "Persist before acknowledging": enqueue raises if the queue itself
#      can't be saved, so the caller never drops its in-memory state for a
#      write that exists nowhere.
#   2. At-least-once, not exactly-once. Idempotent handlers turn a duplicate
#      replay into a no-op.
#   3. The _flushing flag stops a tick from starting a second pass while a
#      manual flush (or a handler's callback) is still running.
