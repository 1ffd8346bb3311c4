"""Time parsing and calculations for scheduling

Calendar dates (``datetime.date``) and instants (naive UTC ``datetime``) are
kept apart: weekday and recurrence math only ever runs on calendar dates,
and a date is only turned into an instant together with a wall-clock time
and a timezone.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...config import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def utcnow() -> datetime:
    """Current instant as naive UTC (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_calendar_date(value: str) -> date:
    """Parse YYYY-MM-DD into a calendar date from its components.

    Raises ValueError on anything else.
    """
    parts = value.strip().split("-")
    if len(parts) != 3 or not all(p.isdigit() for p in parts) or len(parts[0]) != 4:
        raise ValueError(f"Invalid date format: {value}. Use YYYY-MM-DD")
    year, month, day = (int(p) for p in parts)
    return date(year, month, day)


def parse_hhmm(value: str) -> time:
    """Parse a wall-clock time ("HH:MM" or "HH:MM AM/PM")"""
    value = value.strip()
    try:
        parts = value.split(":")
        hour = int(parts[0])
        minute = int(parts[1].split()[0])
        if len(parts[1].split()) > 1:
            raise ValueError("12h suffix")
        return time(hour, minute)
    except (ValueError, IndexError):
        return datetime.strptime(value, "%I:%M %p").time()


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def day_of_week(day: date) -> int:
    """0=Sunday .. 6=Saturday"""
    return (day.weekday() + 1) % 7


def weekday_name(day: date) -> str:
    return WEEKDAY_NAMES[day_of_week(day)]


def resolve_zone(*names: Optional[str]) -> ZoneInfo:
    """First valid IANA zone among ``names``, else the configured default"""
    for name in names:
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"⚠️ Unknown timezone '{name}', trying next fallback")
    return ZoneInfo(DEFAULT_TIMEZONE)


def local_to_utc(day: date, wall_time: time, tz: ZoneInfo) -> datetime:
    """Wall-clock time on a calendar date in ``tz`` -> naive UTC instant"""
    local = datetime.combine(day, wall_time, tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return instant.replace(tzinfo=timezone.utc).astimezone(tz)


def local_today(tz: ZoneInfo, now: Optional[datetime] = None) -> date:
    return utc_to_local(now or utcnow(), tz).date()


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant into naive UTC. Naive input is taken as UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_iso(instant: Optional[datetime]) -> Optional[str]:
    """Naive UTC -> ISO string with Z suffix"""
    if instant is None:
        return None
    return instant.replace(microsecond=0).isoformat() + "Z"


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    return start_a < end_b and end_a > start_b


def window_bounds_utc(day: date, window: dict, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC start/end of a {"start": "HH:MM", "end": "HH:MM"} window on ``day``"""
    start = local_to_utc(day, parse_hhmm(window["start"]), tz)
    end = local_to_utc(day, parse_hhmm(window["end"]), tz)
    return start, end
