"""
Exception types shared across Hourbook.

Illegal state transitions and bad input are raised at the call site; storage
failures are raised by the repositories and converted into queued writes by
the services that own the write boundary.
"""

from __future__ import annotations


class HourbookError(Exception):
    """Base class for all Hourbook errors."""


class SessionStateError(HourbookError, RuntimeError):
    """A work-session transition was requested from the wrong state."""


class StorageError(HourbookError):
    """The local storage layer failed to read or write."""


class InvalidTimeRange(HourbookError, ValueError):
    """End instant is not after the start instant."""


class OverlapError(HourbookError, ValueError):
    """A manual entry overlaps an existing time event of the same subject."""

    def __init__(self, message: str, conflicting_id: str) -> None:
        super().__init__(message)
        self.conflicting_id = conflicting_id


class EventNotFound(HourbookError, KeyError):
    """No live (non-deleted) time event has the requested id."""
