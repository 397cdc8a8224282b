"""
Time helpers shared by the adapters, the sync orchestrator and the resolver.

Conventions:
- instants are timezone-aware UTC datetimes in Python code
- SQLite hands back naive values, as_utc() re-attaches UTC
- dayOfWeek is 0 = Sunday .. 6 = Saturday everywhere
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def day_of_week(target_date: date) -> int:
    """Weekday with Sunday = 0."""
    return (target_date.weekday() + 1) % 7


def local_day_bounds(target_date: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC instants of local midnight on target_date and the following day."""
    start = datetime.combine(target_date, time.min, tzinfo=tz)
    end = datetime.combine(target_date + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def time_str_to_minutes(value: str) -> int:
    """Parse "HH:MM" into minutes since midnight ("24:00" allowed as end of day)."""
    try:
        hour_str, minute_str = value.strip().split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    if not (0 <= minute < 60) or not (0 <= hour <= 24) or (hour == 24 and minute):
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    return hour * 60 + minute


def minutes_to_time_str(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
