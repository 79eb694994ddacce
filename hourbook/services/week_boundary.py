"""
Week Boundary — maps instants onto local calendar weeks.

Every week is a half-open UTC interval [start, end) whose edges are local
midnight on the configured week-start day. The width in real hours follows
the timezone's rules, so a spring-forward week is 167 h and a fall-back
week is 169 h.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Union
from zoneinfo import ZoneInfo

from hourbook.data.models import WeekRange, utc_now

logger = logging.getLogger(__name__)

WEEK_STARTS = ("sunday", "monday")
_LABEL_RE = re.compile(r"^(\d{4})-W(\d{2})$")

TzLike = Union[str, ZoneInfo]


def _zone(tz: TzLike) -> ZoneInfo:
    return tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)


def _require_aware(instant: datetime) -> None:
    if instant.tzinfo is None:
        raise ValueError("Instants must be timezone-aware (UTC).")


def localize(instant: datetime, tz: TzLike) -> datetime:
    """The same instant expressed in local wall-clock time."""
    _require_aware(instant)
    return instant.astimezone(_zone(tz))


def week_start_date(local_day: date, week_start: str) -> date:
    """The local calendar date on which the week containing local_day starts."""
    if week_start not in WEEK_STARTS:
        raise ValueError(f"week_start must be one of {WEEK_STARTS}, got '{week_start}'")
    # date.weekday(): Monday=0 ... Sunday=6
    if week_start == "monday":
        back = local_day.weekday()
    else:
        back = (local_day.weekday() + 1) % 7
    return local_day - timedelta(days=back)


def label_for_start_date(start_date: date) -> str:
    """YYYY-Www, where ww counts whole 7-day steps from Jan 1 of the start year."""
    jan1 = date(start_date.year, 1, 1)
    week_no = (start_date - jan1).days // 7 + 1
    return f"{start_date.year}-W{week_no:02d}"


def _local_midnight_utc(day: date, zone: ZoneInfo) -> datetime:
    # fold=0 on a skipped midnight maps to the instant the day actually begins
    local = datetime.combine(day, time(0), tzinfo=zone)
    return local.astimezone(timezone.utc)


def week_range(instant: datetime, tz: TzLike, week_start: str = "monday") -> WeekRange:
    """The week containing instant, as UTC edges plus its label."""
    zone = _zone(tz)
    start_date = week_start_date(localize(instant, zone).date(), week_start)
    end_date = start_date + timedelta(days=7)
    return WeekRange(
        start_instant=_local_midnight_utc(start_date, zone),
        end_instant=_local_midnight_utc(end_date, zone),
        week_label=label_for_start_date(start_date),
    )


def week_label(instant: datetime, tz: TzLike, week_start: str = "monday") -> str:
    return week_range(instant, tz, week_start).week_label


def in_range(instant: datetime, start: datetime, end: datetime) -> bool:
    """Half-open membership: start is inside, end is not."""
    return start <= instant < end


def current_week_range(tz: TzLike, week_start: str = "monday",
                       now: Optional[datetime] = None) -> WeekRange:
    return week_range(now or utc_now(), tz, week_start)


def is_current_week(instant: datetime, tz: TzLike, week_start: str = "monday",
                    now: Optional[datetime] = None) -> bool:
    current = current_week_range(tz, week_start, now)
    return in_range(instant, current.start_instant, current.end_instant)


def parse_week_label(label: str, tz: TzLike, week_start: str = "monday") -> WeekRange:
    """
    Resolve a label back to its week.

    A label names the week whose start date lies in [Jan 1 + 7(w-1), Jan 1 + 7w).
    The last day of that window always belongs to the labelled week, so we
    resolve from local noon on that day and then check the label round-trips.
    """
    match = _LABEL_RE.match(label or "")
    if not match:
        raise ValueError(f"Malformed week label '{label}' (expected YYYY-Www)")
    year, week_no = int(match.group(1)), int(match.group(2))
    if week_no < 1 or week_no > 53:
        raise ValueError(f"Week number out of range in '{label}'")

    zone = _zone(tz)
    anchor_day = date(year, 1, 1) + timedelta(days=(week_no - 1) * 7 + 6)
    anchor = datetime.combine(anchor_day, time(12), tzinfo=zone)
    result = week_range(anchor, zone, week_start)
    if result.week_label != label:
        raise ValueError(f"Week label '{label}' does not exist for {week_start}-start weeks")
    return result


def recent_week_ranges(count: int, tz: TzLike, week_start: str = "monday",
                       now: Optional[datetime] = None) -> List[WeekRange]:
    """The current week followed by the count-1 weeks before it, newest first."""
    if count < 1:
        return []
    ranges = [current_week_range(tz, week_start, now)]
    while len(ranges) < count:
        previous_instant = ranges[-1].start_instant - timedelta(microseconds=1)
        ranges.append(week_range(previous_instant, tz, week_start))
    return ranges


def validate_timezone(name: str) -> ZoneInfo:
    """Load an IANA zone or raise ValueError naming it."""
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{name}'") from exc


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Turns "when did this happen" into "which week does it count towards".
#   Pure functions, no state, no I/O.
#
# Key points:
#   - Day arithmetic happens on local calendar DATES, not on UTC instants.
#     Adding 7 days to a date is always 7 days, even across a DST change;
#     only the final conversion to UTC sees the 23 h or 25 h day.
#   - The label is computed from the week-start date, so every instant in
#     the week shares one label and labels sort in time order within a year.
#   - zoneinfo + tzdata give real IANA rules on every OS.
#
# Interviewer-friendly talking points:
#   1. Half-open intervals [start, end) mean no instant ever belongs to two
#      weeks, including exactly-midnight events.
#   2. Nonexistent local midnights (zones that spring forward at 00:00)
#      resolve to the first real instant of that day.
#   3. Attribution uses the start instant only: an overnight Sunday→Monday
#      session counts toward the week it began in.
