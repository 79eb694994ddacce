"""Unit tests for session duration validation."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hourbook.services.session_validator import (
    ValidationReason,
    format_session_warning,
    round_half_up_minutes,
    validate,
)

START = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


class TestValidate:
    def test_normal_session(self):
        result = validate(START, START + timedelta(hours=8, minutes=15))
        assert result.valid
        assert result.minutes == 495
        assert result.hours == 8.25
        assert result.exceeds_by_hours == 0
        assert result.reason is None

    def test_forgotten_clock_out(self):
        result = validate(START, START + timedelta(hours=57))
        assert not result.valid
        assert result.reason == ValidationReason.TOO_LONG
        assert result.minutes == 3420
        assert result.hours == 57.0
        assert result.exceeds_by_hours == 43.0
        assert not result.blocked

    def test_exactly_at_limit_is_valid(self):
        assert validate(START, START + timedelta(hours=14)).valid

    def test_limit_uses_rounded_minutes(self):
        assert validate(START, START + timedelta(hours=14, seconds=29)).valid
        over = validate(START, START + timedelta(hours=14, seconds=30))
        assert not over.valid
        assert over.minutes == 841
        assert over.exceeds_by_hours == 0.02

    def test_custom_limit(self):
        assert not validate(START, START + timedelta(hours=9), max_hours=8).valid
        assert validate(START, START + timedelta(hours=20), max_hours=24).valid

    def test_end_before_start_is_blocked(self):
        result = validate(START, START - timedelta(minutes=5))
        assert not result.valid
        assert result.blocked
        assert result.reason == ValidationReason.TIME_TRAVEL
        assert result.minutes == 0

    def test_zero_length_is_blocked(self):
        assert validate(START, START).blocked

    def test_short_session_rounds_to_zero(self):
        result = validate(START, START + timedelta(seconds=20))
        assert result.valid
        assert result.minutes == 0


class TestRounding:
    def test_half_up(self):
        assert round_half_up_minutes(29_999) == 0
        assert round_half_up_minutes(30_000) == 1
        assert round_half_up_minutes(89_999) == 1
        assert round_half_up_minutes(90_000) == 2
        assert round_half_up_minutes(0) == 0


class TestWarning:
    def test_format(self):
        assert format_session_warning(18.5, 4.5) == (
            "This session is 18.5 hours long (4.5 hours over the typical limit). "
            "Did you forget to clock out? Please confirm this is correct."
        )

    def test_format_rounds_to_one_decimal(self):
        assert "57.0 hours long (43.0 hours over" in format_session_warning(57, 43)
