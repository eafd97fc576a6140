"""UTC time helpers shared by services and models."""

from __future__ import annotations

import datetime as dt
from typing import Optional


def utcnow() -> dt.datetime:
    """Return the current time as an aware UTC datetime."""
    return dt.datetime.now(dt.UTC)


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes for values that were written as UTC,
    so naive values are assumed to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC)


def hours_between(start: dt.datetime, end: dt.datetime) -> float:
    """Return the signed number of hours from ``start`` to ``end``."""
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600
