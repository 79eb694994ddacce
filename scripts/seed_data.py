"""
Seed Data Generator — fills the event log with several weeks of fake work.

Run: python scripts/seed_data.py [weeks]
"""

import random
import sys
import uuid
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hourbook.app import HourbookCore
from hourbook.data.database import Database
from hourbook.data.models import TimeEvent, utc_now

JOBS = ["client-acme", "client-globex", "internal-tools", "open-source"]


def seed(weeks: int = 6) -> None:
    db = Database()
    db.connect()
    core = HourbookCore(db.conn)
    settings = core.settings.current()

    # ── Generate events ─────────────────────────────────────────────────
    start_day = utc_now() - timedelta(weeks=weeks)
    created = 0
    for day in range(weeks * 7):
        if random.random() < 0.25:
            continue  # day off
        cursor = start_day + timedelta(days=day, hours=random.randint(14, 17))
        for _ in range(random.randint(1, 3)):
            length = timedelta(minutes=random.randint(25, 180))
            event = TimeEvent(
                id=uuid.uuid4().hex,
                subject_id=settings.subject_id,
                job_id=random.choice(JOBS),
                start_instant=cursor,
                end_instant=cursor + length,
                duration_minutes=int(length.total_seconds() // 60),
                week_label=core.cache.label_for(cursor),
                source=random.choice(["timer", "manual"]),
            )
            core.events.create(event)
            created += 1
            cursor = event.end_instant + timedelta(minutes=random.randint(10, 60))

    # ── Rebuild stats from what we just wrote ───────────────────────────
    summary = core.cache.backfill(weeks_back=weeks + 1)
    db.close()
    print(f"Seeded {created} events; rebuilt {summary.weeks_processed} weeks.")
    for label, minutes in sorted(summary.per_week_totals.items()):
        print(f"  {label}: {minutes / 60:.1f} h")


if __name__ == "__main__":
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 6
    seed(count)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this script does:
#   Generates a few weeks of time entries so the weekly stats have
#   something to show, then runs a backfill to build the cached totals.
#
# Key points:
#   - Events go straight into the event log (no cache deltas), which is
#     exactly the situation backfill exists to repair.
#   - Labels are stamped with the same helper the app uses, so seeded
#     rows are indistinguishable from real ones.
#
# Interviewer-friendly talking points:
#   1. Seeding + backfill doubles as a smoke test of the authoritative
#      recompute path.
#   2. The script goes through EventLogStore, not raw SQL.
