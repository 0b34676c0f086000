"""
Business Time — calendar math in the studio's timezone.

Rules:
  - The studio runs on a fixed UTC+7 offset (Krasnoyarsk), regardless of server TZ
  - Naive datetimes coming from forms are wall-clock studio time
  - Weekdays follow the schedule convention: 0 = Sunday ... 6 = Saturday
  - Everything stored is a UTC instant
"""

from __future__ import annotations
from datetime import datetime, date, time, timedelta, timezone

from config import settings


def business_tz() -> timezone:
    return timezone(timedelta(hours=settings.BUSINESS_UTC_OFFSET_HOURS))


def parse_business_datetime(value: datetime | str) -> datetime:
    """
    Interpret a form value as a UTC instant.

    Values with an explicit offset are kept as-is; naive ones are studio time.
    """
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=business_tz())
    return value.astimezone(timezone.utc)


def business_date(instant: datetime) -> date:
    """Calendar day of an instant as seen in the studio."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(business_tz()).date()


def schedule_weekday(day: date) -> int:
    """Weekday in schedule convention (0 = Sunday)."""
    return day.isoweekday() % 7


def parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")[:2]
    return time(int(hours), int(minutes))


def session_instant(day: date, hhmm: str) -> datetime:
    """UTC instant of a wall-clock studio time on a given studio day."""
    local = datetime.combine(day, parse_hhmm(hhmm), tzinfo=business_tz())
    return local.astimezone(timezone.utc)


def iter_business_days(start: datetime, end: datetime):
    """Yield studio calendar days from start to end inclusive."""
    day = business_date(start)
    last = business_date(end)
    while day <= last:
        yield day
        day += timedelta(days=1)


def hours_until(start: datetime, now: datetime) -> int:
    """Whole hours left before start (floored, may be negative)."""
    seconds = (start - now).total_seconds()
    return int(seconds // 3600)
