"""Unit tests for the weekly stats cache (incremental + authoritative paths)."""

import random
import sqlite3
import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hourbook.app import HourbookCore
from hourbook.data.database import SCHEMA_SQL
from hourbook.data.models import AggregateSnapshot, TargetKind, TimeEvent
from hourbook.data.repository import EventLogStore, KeyValueStore
from hourbook.errors import OverlapError, StorageError
from hourbook.services.aggregation_service import (
    SNAPSHOT_KEY,
    AggregationCache,
    sum_events,
)
from hourbook.services.notifications import NotificationCenter, NotificationKind
from hourbook.services.ticker import FakeClock, ManualTicker
from hourbook.services.write_queue import DurableWriteQueue
from hourbook.config import Settings

# Wednesday; with the default Los Angeles / Monday settings the current
# week runs 2025-03-03T08:00Z → 2025-03-10T07:00Z and is labelled 2025-W09.
NOW = datetime(2025, 3, 5, 15, 0, tzinfo=timezone.utc)
THIS_WEEK = "2025-W09"
LAST_WEEK = "2025-W08"


def at(days=0, hours=0, minutes=0):
    """An instant relative to Monday 2025-03-03 09:00Z (inside this week)."""
    return datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc) + timedelta(
        days=days, hours=hours, minutes=minutes)


@pytest.fixture
def conn():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    return conn


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def core(conn, clock):
    core = HourbookCore(conn, clock=clock, ticker=ManualTicker(clock))
    core.start()
    return core


def add(core, job, start, minutes):
    attempt = core.time_log.add_manual_entry(job, start, start + timedelta(minutes=minutes))
    assert attempt.status == "ok"
    return attempt.details["event"]


def raw_event(core, job, start, minutes, label=None):
    """Write straight to the event log, bypassing the cache."""
    event = TimeEvent(
        id=f"{job}-{start.isoformat()}", subject_id="local-user", job_id=job,
        start_instant=start, end_instant=start + timedelta(minutes=minutes),
        duration_minutes=minutes, week_label=label or core.cache.label_for(start),
    )
    core.events.create(event)
    return event


def authoritative(core, label=THIS_WEEK):
    return sum_events(core.events.list_by_week(label))


class TestBootstrap:
    def test_empty_start_computes_and_persists(self, core):
        snap = core.cache.snapshot.get()
        assert snap.week_label == THIS_WEEK
        assert snap.total_minutes == 0
        assert snap.target_minutes == 3600
        assert snap.last_full_recompute_at == NOW
        assert core.kv.get(SNAPSHOT_KEY)["week_label"] == THIS_WEEK

    def test_loads_persisted_snapshot_for_current_week(self, conn, clock):
        KeyValueStore(conn).set(SNAPSHOT_KEY, AggregateSnapshot(
            THIS_WEEK, 42, 3600, {"acme": 42}, NOW, NOW).to_dict())
        core = HourbookCore(conn, clock=clock, ticker=ManualTicker(clock))
        core.start()
        # Trusted as-is; drift detection is a separate step
        assert core.cache.snapshot.get().total_minutes == 42

    def test_stale_week_snapshot_is_recomputed(self, conn, clock):
        KeyValueStore(conn).set(SNAPSHOT_KEY, AggregateSnapshot(
            LAST_WEEK, 500, 3600, {"acme": 500}).to_dict())
        core = HourbookCore(conn, clock=clock, ticker=ManualTicker(clock))
        core.start()
        snap = core.cache.snapshot.get()
        assert snap.week_label == THIS_WEEK
        assert snap.total_minutes == 0


class TestIncremental:
    def test_create_adds_minutes(self, core):
        add(core, "acme", at(hours=1), 90)
        add(core, "globex", at(hours=3), 30)
        snap = core.cache.snapshot.get()
        assert snap.total_minutes == 120
        assert snap.per_job_minutes == {"acme": 90, "globex": 30}

    def test_delete_subtracts_and_drops_empty_job(self, core):
        event = add(core, "acme", at(hours=1), 90)
        add(core, "globex", at(hours=3), 30)
        core.time_log.delete_event(event.id)
        snap = core.cache.snapshot.get()
        assert snap.total_minutes == 30
        assert snap.per_job_minutes == {"globex": 30}

    def test_last_week_event_does_not_touch_snapshot(self, core):
        add(core, "acme", at(days=-3), 60)
        assert core.cache.snapshot.get().total_minutes == 0

    def test_every_delta_is_persisted(self, core):
        add(core, "acme", at(hours=1), 45)
        assert core.kv.get(SNAPSHOT_KEY)["total_minutes"] == 45

    def test_clamps_at_zero(self, core):
        core.cache.apply_delta(THIS_WEEK, "acme", -30)
        snap = core.cache.snapshot.get()
        assert snap.total_minutes == 0
        assert snap.per_job_minutes == {}

    def test_explicit_not_current_week_is_ignored(self, core):
        core.cache.apply_delta(THIS_WEEK, "acme", 30, affects_current_week=False)
        assert core.cache.snapshot.get().total_minutes == 0

    def test_target_override(self, core):
        core.cache.apply_delta(THIS_WEEK, "acme", 30, target_minutes=1200)
        assert core.cache.snapshot.get().target_minutes == 1200

    def test_reentrant_delta_is_serialized(self, core):
        seen = []

        def subscriber(snap):
            seen.append(snap.total_minutes)
            if snap.total_minutes == 30 and len(seen) < 10:
                core.cache.apply_delta(THIS_WEEK, "globex", 10)

        core.cache.snapshot.subscribe(subscriber)
        core.cache.apply_delta(THIS_WEEK, "acme", 30)
        snap = core.cache.snapshot.get()
        assert snap.total_minutes == 40
        assert snap.per_job_minutes == {"acme": 30, "globex": 10}
        assert seen == [0, 30, 40]

    def test_uses_stored_label_not_current_settings(self, core):
        event = add(core, "acme", at(hours=1), 60)
        # Moving the week start changes which week is current, not stored labels
        stored = core.events.get_by_id(event.id)
        assert stored.week_label == THIS_WEEK
        core.settings.update(week_start="sunday")
        assert core.events.get_by_id(event.id).week_label == THIS_WEEK


class TestEquivalence:
    def test_random_operations_match_recompute(self, core):
        rng = random.Random(20250305)
        # Non-overlapping 3 h slots: 16 in this week, 16 in the previous one
        slots = [at(hours=3 * i) for i in range(16)] + [at(days=-7, hours=3 * i) for i in range(16)]
        free = list(slots)
        live = {}
        jobs = ["acme", "globex", "initech"]

        for step in range(200):
            op = rng.choice(["create", "create", "delete", "job", "move", "note"])
            if op == "create" and free:
                start = free.pop(rng.randrange(len(free)))
                event = add(core, rng.choice(jobs), start, rng.randint(1, 170))
                live[event.id] = start
            elif op == "delete" and live:
                event_id = rng.choice(sorted(live))
                core.time_log.delete_event(event_id)
                free.append(live.pop(event_id))
            elif op == "job" and live:
                core.time_log.correct_entry(rng.choice(sorted(live)), job_id=rng.choice(jobs))
            elif op == "move" and live and free:
                event_id = rng.choice(sorted(live))
                new_start = free.pop(rng.randrange(len(free)))
                core.time_log.correct_entry(event_id, start=new_start,
                                            end=new_start + timedelta(minutes=rng.randint(1, 170)))
                free.append(live[event_id])
                live[event_id] = new_start
            elif op == "note" and live:
                core.time_log.update_note(rng.choice(sorted(live)), f"step {step}")

            total, per_job = authoritative(core)
            snap = core.cache.snapshot.get()
            assert (snap.total_minutes, snap.per_job_minutes) == (total, per_job), f"step {step}"

        assert not core.cache.detect_drift().has_drift


class TestRecompute:
    def test_recompute_repairs_drift(self, core):
        raw_event(core, "acme", at(hours=1), 60)
        report = core.cache.detect_drift()
        assert report.has_drift
        assert report.drift_minutes == -60
        # detect_drift changed nothing
        assert core.cache.snapshot.get().total_minutes == 0

        core.cache.recompute()
        assert not core.cache.detect_drift().has_drift
        assert core.cache.snapshot.get().total_minutes == 60

    def test_recompute_other_week_leaves_snapshot_alone(self, core):
        raw_event(core, "acme", at(days=-7), 60)
        result = core.cache.recompute(LAST_WEEK)
        assert result.week_label == LAST_WEEK
        assert result.total_minutes == 60
        assert core.cache.snapshot.get().week_label == THIS_WEEK

    def test_ignores_deleted_events(self, core):
        event = raw_event(core, "acme", at(hours=1), 60)
        core.events.soft_delete(event.id)
        assert core.cache.recompute().total_minutes == 0

    def test_overlapping_manual_entry_rejected(self, core):
        first = add(core, "acme", at(hours=1), 60)
        with pytest.raises(OverlapError) as info:
            core.time_log.add_manual_entry("acme", at(hours=1, minutes=30), at(hours=3))
        assert info.value.conflicting_id == first.id
        assert core.cache.snapshot.get().total_minutes == 60


class TestBackfill:
    def test_backfill_rebuilds_each_week(self, core):
        raw_event(core, "acme", at(hours=1), 60)
        raw_event(core, "acme", at(days=-7), 120)
        raw_event(core, "globex", at(days=-14), 30)
        progress = []
        summary = core.cache.backfill(weeks_back=3, on_progress=progress.append)

        assert summary.weeks_processed == 3
        assert summary.failures == []
        assert summary.per_week_totals == {"2025-W07": 30, LAST_WEEK: 120, THIS_WEEK: 60}
        assert [p["current"] for p in progress] == [1, 2, 3]
        assert progress[-1] == {"current": 3, "total": 3, "week_label": THIS_WEEK}
        assert core.cache.snapshot.get().total_minutes == 60
        assert len(core.notifications.of_kind(NotificationKind.BACKFILL_PROGRESS)) == 3
        assert len(core.notifications.of_kind(NotificationKind.BACKFILL_COMPLETE)) == 1

    def test_backfill_isolates_failures(self, core, monkeypatch):
        raw_event(core, "acme", at(hours=1), 60)
        real = core.events.list_by_week

        def flaky(label):
            if label == LAST_WEEK:
                raise StorageError("list week failed: disk I/O error")
            return real(label)

        monkeypatch.setattr(core.events, "list_by_week", flaky)
        summary = core.cache.backfill(weeks_back=3)
        assert summary.weeks_processed == 2
        assert summary.failures == [{"week_label": LAST_WEEK,
                                     "error": "list week failed: disk I/O error"}]
        assert summary.per_week_totals[THIS_WEEK] == 60

    def test_backfill_relabel(self, core):
        raw_event(core, "acme", at(hours=1), 60, label="1999-W01")
        assert core.cache.backfill(weeks_back=2).per_week_totals[THIS_WEEK] == 0

        summary = core.cache.backfill(weeks_back=2, relabel=True)
        assert summary.per_week_totals[THIS_WEEK] == 60
        assert core.events.list_by_week(THIS_WEEK)[0].week_label == THIS_WEEK


class TestSettingsAndRollover:
    def test_target_change_updates_snapshot(self, core):
        core.settings.update(week_target_minutes=2400)
        assert core.cache.snapshot.get().target_minutes == 2400
        assert core.kv.get(SNAPSHOT_KEY)["target_minutes"] == 2400

    def test_rollover_on_tick(self, core, clock):
        add(core, "acme", at(hours=1), 60)
        clock.set(datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc))
        core.ticker.tick()
        snap = core.cache.snapshot.get()
        assert snap.week_label == "2025-W10"
        assert snap.total_minutes == 0

    def test_delta_after_rollover_rebuilds_new_week(self, core, clock):
        clock.set(datetime(2025, 3, 11, 18, 0, tzinfo=timezone.utc))
        add(core, "acme", datetime(2025, 3, 11, 16, 0, tzinfo=timezone.utc), 45)
        snap = core.cache.snapshot.get()
        assert snap.week_label == "2025-W10"
        assert snap.total_minutes == 45


class FailingSnapshotKV(KeyValueStore):
    def __init__(self, conn):
        super().__init__(conn)
        self.offline = False

    def set(self, key, value):
        if self.offline and key == SNAPSHOT_KEY:
            raise StorageError("write snapshot failed")
        super().set(key, value)


class TestSnapshotPersistence:
    def test_failed_snapshot_write_is_queued_once(self, conn, clock):
        kv = FailingSnapshotKV(conn)
        notes = NotificationCenter()
        queue = DurableWriteQueue(kv, clock, notes)
        cache = AggregationCache(EventLogStore(conn), kv, Settings, clock, notes, queue=queue)
        cache.load()

        kv.offline = True
        cache.apply_delta(THIS_WEEK, "acme", 30)
        cache.apply_delta(THIS_WEEK, "acme", 15)
        assert queue.size == 1
        assert queue.items[0].target_kind == TargetKind.AGGREGATE_SNAPSHOT

        kv.offline = False
        assert queue.flush().succeeded == 1
        assert kv.get(SNAPSHOT_KEY)["total_minutes"] == 45
