from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DD" and "YYYY-MM-DDTHH:MM" (naive) are interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    return to_naive_utc(dt)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def as_datetime(value: Union[date, datetime, None]) -> datetime:
    """Coerce a date/datetime (or None meaning now) to a UTC-naive datetime."""
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return to_naive_utc(value)
    return datetime(value.year, value.month, value.day)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def days_to_seconds(days: float) -> int:
    return int(days * SECONDS_PER_DAY)


def add_days(dt: datetime, days: int) -> datetime:
    return dt + timedelta(days=days)
