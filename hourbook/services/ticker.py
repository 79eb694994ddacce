"""
Clock and Ticker — injected time.

Nothing in the services reads the wall clock or starts a timer on its own.
A Clock answers "what time is it" and a Ticker calls registered callbacks
periodically. The production pair is SystemClock + QtTicker; tests use
FakeClock + ManualTicker and advance time explicitly.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List

from hourbook.data.models import utc_now

logger = logging.getLogger(__name__)

TickCallback = Callable[[datetime], None]


class SystemClock:
    def now(self) -> datetime:
        return utc_now()


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        if start.tzinfo is None:
            raise ValueError("FakeClock needs an aware datetime.")
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **kwargs: float) -> datetime:
        """advance(minutes=5), advance(hours=2, seconds=30) ..."""
        self._now = self._now + timedelta(**kwargs)
        return self._now


class Ticker:
    """Base ticker: keeps the callback list and fans a tick out to it."""

    def __init__(self, clock) -> None:
        self.clock = clock
        self._callbacks: List[TickCallback] = []

    def register(self, callback: TickCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    def tick(self) -> None:
        now = self.clock.now()
        for callback in list(self._callbacks):
            callback(now)

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class ManualTicker(Ticker):
    """Fires only when the test calls tick() or advance()."""

    def advance(self, seconds: float) -> None:
        """Move the fake clock forward one second at a time, ticking each step."""
        remaining = seconds
        while remaining > 0:
            step = min(1.0, remaining)
            self.clock.advance(seconds=step)
            self.tick()
            remaining -= step
