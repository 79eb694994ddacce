"""
State Store — a tiny observable value holder.

Session state, the weekly stats snapshot and the retry-queue status are all
held in Observables so any front end can subscribe instead of polling.
"""

from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """Holds one value and tells subscribers whenever it is replaced."""

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscribers: List[Callable[[T], None]] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            callback(value)

    def update(self, fn: Callable[[T], T]) -> None:
        self.set(fn(self._value))

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register callback, call it once with the current value, return an unsubscriber."""
        self._subscribers.append(callback)
        callback(self._value)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
