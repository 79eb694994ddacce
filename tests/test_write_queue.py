"""Unit tests for the durable retry queue."""

import sqlite3
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hourbook.data.database import SCHEMA_SQL
from hourbook.data.repository import KeyValueStore
from hourbook.errors import StorageError
from hourbook.services.notifications import NotificationCenter, NotificationKind
from hourbook.services.ticker import FakeClock, ManualTicker
from hourbook.services.write_queue import (
    DEAD_LETTER_KEY,
    QUEUE_KEY,
    DurableWriteQueue,
    backoff_delay,
)

NOW = datetime(2025, 3, 5, 15, 0, tzinfo=timezone.utc)


class SwitchableKV(KeyValueStore):
    """KeyValueStore whose writes can be made to fail."""

    def __init__(self, conn):
        super().__init__(conn)
        self.offline = False

    def set(self, key, value):
        if self.offline:
            raise StorageError(f"write {key} failed: disk unavailable")
        super().set(key, value)


class FlakyHandler:
    """Fails the first `failures` calls, then succeeds."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    def __call__(self, item):
        self.calls.append(item.id)
        if len(self.calls) <= self.failures:
            raise StorageError("still offline")


@pytest.fixture
def kv():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    return SwitchableKV(conn)


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def notes():
    return NotificationCenter()


@pytest.fixture
def queue(kv, clock, notes):
    return DurableWriteQueue(kv, clock, notes, max_attempts=3)


class TestBackoff:
    def test_doubles_then_caps(self):
        assert [backoff_delay(n) for n in range(8)] == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_custom_policy(self):
        assert backoff_delay(0, 0.5, 10) == 0.5
        assert backoff_delay(5, 0.5, 10) == 10


class TestEnqueue:
    def test_enqueue_persists_immediately(self, queue, kv):
        item = queue.enqueue("TimeEvent", "create", {"id": "e1"})
        stored = kv.get(QUEUE_KEY)
        assert len(stored) == 1
        assert stored[0]["id"] == item.id
        assert stored[0]["attempt_count"] == 0
        assert item.next_attempt_at == NOW + timedelta(seconds=1)
        assert queue.state.get().size == 1

    def test_enqueue_raises_when_queue_cannot_be_saved(self, queue, kv):
        kv.offline = True
        with pytest.raises(StorageError):
            queue.enqueue("TimeEvent", "create", {"id": "e1"})
        assert queue.size == 0

    def test_load_restores_and_schedules_retry(self, kv, clock, notes, queue):
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        queue.enqueue("TimeEvent", "create", {"id": "e2"})
        clock.advance(minutes=10)

        restored = DurableWriteQueue(kv, clock, notes)
        assert restored.load() == 2
        assert [i.payload["id"] for i in restored.items] == ["e1", "e2"]
        assert all(i.next_attempt_at == clock.now() + timedelta(seconds=2)
                   for i in restored.items)
        assert restored.state.get().size == 2


class TestProcessing:
    def test_success_removes_item(self, queue, kv):
        handler = FlakyHandler()
        queue.register_handler("TimeEvent", handler)
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        result = queue.flush()
        assert (result.succeeded, result.failed, result.exhausted) == (1, 0, 0)
        assert queue.size == 0
        assert kv.get(QUEUE_KEY) == []
        assert queue.state.get().last_successful_sync == NOW

    def test_failure_records_error_and_backs_off(self, queue, clock):
        queue.register_handler("TimeEvent", FlakyHandler(failures=1))
        item = queue.enqueue("TimeEvent", "create", {"id": "e1"})
        result = queue.flush()
        assert result.failed == 1
        assert item.attempt_count == 1
        assert "still offline" in item.last_error
        assert item.next_attempt_at == NOW + timedelta(seconds=2)

    def test_run_due_only_runs_due_items(self, queue, clock):
        handler = FlakyHandler()
        queue.register_handler("TimeEvent", handler)
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        assert queue.run_due(clock.now()).succeeded == 0
        assert handler.calls == []
        clock.advance(seconds=1)
        assert queue.run_due(clock.now()).succeeded == 1

    def test_ticker_drives_retries(self, queue, clock):
        handler = FlakyHandler(failures=2)
        queue.register_handler("TimeEvent", handler)
        ticker = ManualTicker(clock)
        ticker.register(queue.run_due)
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        # due after 1 s, then 2 s, then 4 s
        ticker.advance(1)
        assert len(handler.calls) == 1
        ticker.advance(2)
        assert len(handler.calls) == 2
        ticker.advance(3)
        assert len(handler.calls) == 2
        ticker.advance(1)
        assert len(handler.calls) == 3
        assert queue.size == 0

    def test_fifo_order(self, queue):
        handler = FlakyHandler()
        queue.register_handler("TimeEvent", handler)
        first = queue.enqueue("TimeEvent", "create", {"id": "e1"})
        second = queue.enqueue("TimeEvent", "create", {"id": "e2"})
        queue.flush()
        assert handler.calls == [first.id, second.id]

    def test_partial_success(self, queue):
        queue.register_handler("TimeEvent", FlakyHandler())
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        queue.enqueue("Mystery", "create", {"id": "x"})
        result = queue.flush()
        assert (result.succeeded, result.failed) == (1, 1)
        assert queue.items[0].target_kind == "Mystery"
        assert "No handler" in queue.items[0].last_error

    def test_flush_is_not_reentrant(self, queue):
        inner_results = []

        def handler(item):
            inner_results.append(queue.flush())

        queue.register_handler("TimeEvent", handler)
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        assert queue.flush().succeeded == 1
        assert inner_results[0].succeeded == 0

    def test_flush_summary_notification(self, queue, notes):
        queue.register_handler("TimeEvent", FlakyHandler())
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        queue.flush()
        summary = notes.of_kind(NotificationKind.FLUSH_SUMMARY)
        assert len(summary) == 1
        assert summary[0].data["succeeded"] == 1

    def test_syncing_flag_published(self, queue):
        seen = []
        queue.state.subscribe(lambda s: seen.append(s.syncing))
        queue.register_handler("TimeEvent", FlakyHandler())
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        queue.flush()
        assert True in seen
        assert seen[-1] is False


class TestExhaustion:
    def test_gives_up_after_max_attempts(self, queue, kv, notes):
        dropped = []
        queue.on_permanent_failure = dropped.append
        queue.register_handler("TimeEvent", FlakyHandler(failures=99))
        item = queue.enqueue("TimeEvent", "create", {"id": "e1"})

        assert queue.flush().failed == 1
        assert queue.flush().failed == 1
        result = queue.flush()

        assert result.exhausted == 1
        assert queue.size == 0
        letters = kv.get(DEAD_LETTER_KEY)
        assert len(letters) == 1
        assert letters[0]["id"] == item.id
        assert letters[0]["attempt_count"] == 3
        assert dropped == [item]
        assert len(notes.persistent) == 1
        assert notes.persistent[0].kind == NotificationKind.WRITE_FAILED_PERMANENTLY

    def test_attempt_count_never_decreases(self, queue):
        queue.register_handler("TimeEvent", FlakyHandler(failures=99))
        item = queue.enqueue("TimeEvent", "create", {"id": "e1"})
        counts = []
        for _ in range(2):
            queue.flush()
            counts.append(item.attempt_count)
        assert counts == [1, 2]

    def test_clear(self, queue, kv):
        queue.enqueue("TimeEvent", "create", {"id": "e1"})
        queue.enqueue("TimeEvent", "create", {"id": "e2"})
        assert queue.clear() == 2
        assert queue.size == 0
        assert kv.get(QUEUE_KEY) == []
