"""
Session Validator — sanity checks on a start/end pair.

Catches the two common mistakes: an end before the start, and a forgotten
clock-out that turns a work day into a 50-hour session.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

DEFAULT_MAX_SESSION_HOURS = 14


class ValidationReason:
    TIME_TRAVEL = "time_travel"
    TOO_LONG = "too_long"


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    hours: float
    minutes: int
    exceeds_by_hours: float
    reason: Optional[str] = None

    @property
    def blocked(self) -> bool:
        """True when no amount of confirming can make this pair acceptable."""
        return self.reason == ValidationReason.TIME_TRAVEL


def round_half_up_minutes(ms: float) -> int:
    """Milliseconds to whole minutes, halves rounded up (29.5 s → 0, 30 s → 1)."""
    return int((ms + 30_000) // 60_000)


def validate(start: datetime, end: datetime,
             max_hours: float = DEFAULT_MAX_SESSION_HOURS) -> SessionValidation:
    elapsed_ms = (end - start).total_seconds() * 1000
    if elapsed_ms <= 0:
        return SessionValidation(False, 0.0, 0, 0.0, ValidationReason.TIME_TRAVEL)

    minutes = round_half_up_minutes(elapsed_ms)
    hours = minutes / 60
    if minutes <= max_hours * 60:
        return SessionValidation(True, round(hours, 2), minutes, 0.0)
    return SessionValidation(
        False, round(hours, 2), minutes, round(hours - max_hours, 2),
        ValidationReason.TOO_LONG,
    )


def format_session_warning(hours: float, exceeds_by: float) -> str:
    return (
        f"This session is {hours:.1f} hours long ({exceeds_by:.1f} hours over the "
        f"typical limit). Did you forget to clock out? Please confirm this is correct."
    )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   A pure function that classifies a session as fine, suspicious (too long)
#   or impossible (ends before it starts).
#
# Key points:
#   - "Too long" is a warning the user can override; "time travel" is not.
#     The reason field lets callers tell the two apart without re-deriving.
#   - Minutes are rounded half-up once, and hours derive from the rounded
#     minutes, so the numbers shown to the user always agree with each other.
#
# Interviewer-friendly talking points:
#   1. Frozen dataclass result: callers can't accidentally mutate a verdict.
#   2. No clock access here. The caller passes both instants, which makes
#      every edge case a one-line test.
#   3. The limit is configurable per user (night-shift workers exist).
