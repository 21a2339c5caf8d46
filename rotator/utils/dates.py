"""Datetime helpers.

All timestamps are stored as naive UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pendulum


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string; offsets are honoured, naive strings are UTC."""
    parsed = pendulum.parse(value, tz="UTC")
    if not isinstance(parsed, datetime):
        raise ValueError(f"Not a timestamp: {value!r}")
    utc = parsed.in_timezone("UTC")
    return datetime(utc.year, utc.month, utc.day, utc.hour, utc.minute, utc.second, utc.microsecond)


def add_minutes(value: datetime, minutes: float) -> datetime:
    return value + timedelta(minutes=minutes)


def isoformat_z(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() + "Z"
