from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

"""
Every timestamp the engine stores or compares is UTC without tzinfo.
Conversion happens at the edges: parse_iso_datetime() on the way in,
to_utc_z() on the way out.
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(value: Union[datetime, date, None]) -> Optional[datetime]:
    """Dates become midnight; aware datetimes are shifted to UTC and stripped."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    "2026-03-31", "2026-03-31T10:00", "2026-03-31T10:00:00Z" or with an
    offset. Naive input is taken as UTC. Blank or None gives None; anything
    else unparseable raises ValueError.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO-8601 string, got {type(value).__name__}")
    if not value.strip():
        return None
    text = value.strip()
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    return normalize_datetime(datetime.fromisoformat(text))


def end_of_day(value: Union[datetime, date]) -> datetime:
    if isinstance(value, datetime):
        value = normalize_datetime(value).date()
    return datetime.combine(value, time.max)


def add_days(value: datetime, days: int) -> datetime:
    return value + timedelta(days=days)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 with a trailing Z (naive input is UTC)."""
    if dt is None:
        return None
    dt = normalize_datetime(dt).replace(microsecond=0)
    return dt.isoformat() + "Z"
