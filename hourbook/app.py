"""
Hourbook Core — builds and wires every service around one SQLite connection.

Used by main.py (headless Qt host), scripts/seed_data.py and the tests. The
tests pass an in-memory connection, a FakeClock and a ManualTicker; the app
passes the real database, SystemClock and QtTicker.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from hourbook.config import SettingsStore
from hourbook.data.repository import EventLogStore, KeyValueStore, SessionRepository
from hourbook.services.aggregation_service import AggregationCache
from hourbook.services.notifications import NotificationCenter
from hourbook.services.session_service import SessionService
from hourbook.services.ticker import SystemClock, Ticker
from hourbook.services.time_log_service import TimeLogService
from hourbook.services.write_queue import DurableWriteQueue

logger = logging.getLogger(__name__)


class HourbookCore:
    def __init__(self, conn: sqlite3.Connection, clock=None,
                 ticker: Optional[Ticker] = None) -> None:
        self.conn = conn
        self.clock = clock or SystemClock()
        self.ticker = ticker or Ticker(self.clock)
        self.notifications = NotificationCenter()

        self.kv = KeyValueStore(conn)
        self.events = EventLogStore(conn)
        self.sessions_repo = SessionRepository(conn)
        self.settings = SettingsStore(self.kv)

        current = self.settings.current()
        self.queue = DurableWriteQueue(
            self.kv, self.clock, self.notifications,
            initial_delay_s=current.queue_initial_delay_s,
            max_delay_s=current.queue_max_delay_s,
            max_attempts=current.queue_max_attempts,
        )
        self.cache = AggregationCache(
            self.events, self.kv, self.settings.current, self.clock,
            self.notifications, queue=self.queue,
        )
        self.time_log = TimeLogService(
            self.events, self.cache, self.queue, self.settings.current,
            self.clock, self.notifications,
        )
        self.session = SessionService(
            self.sessions_repo, self.time_log, self.queue, self.settings.current,
            self.clock, self.notifications,
        )

        self.settings.subscribe(self.cache.on_settings_changed)
        self.settings.subscribe(self._on_queue_policy_changed)
        self._unregister_ticks = []
        self.started = False

    def start(self) -> None:
        """Restore persisted state and start ticking."""
        if self.started:
            return
        restored = self.queue.load()
        self.session.restore()
        self.cache.load()
        self._unregister_ticks = [
            self.ticker.register(self.queue.run_due),
            self.ticker.register(self.cache.check_rollover),
            self.ticker.register(self.session.on_tick),
        ]
        self.ticker.start()
        self.started = True
        logger.info("Hourbook core started (%d queued write(s) restored)", restored)

    def shutdown(self) -> None:
        if not self.started:
            return
        self.ticker.stop()
        for unregister in self._unregister_ticks:
            unregister()
        self._unregister_ticks = []
        self.started = False
        logger.info("Hourbook core stopped.")

    def _on_queue_policy_changed(self, old, new) -> None:
        self.queue.configure(new.queue_initial_delay_s, new.queue_max_delay_s,
                             new.queue_max_attempts)
