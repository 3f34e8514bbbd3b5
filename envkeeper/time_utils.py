"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]

MILLISECONDS_PER_DAY = 86_400_000


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into a UTC ``datetime``."""

    try:
        cleaned = value.strip()
        if cleaned.endswith("Z"):
            cleaned = cleaned[:-1] + "+00:00"
        parsed = datetime.fromisoformat(cleaned)
    except (AttributeError, TypeError, ValueError):
        return None
    return ensure_utc(parsed)


def to_iso(dt: datetime) -> str:
    """Render ``dt`` as an ISO-8601 string in UTC."""

    return ensure_utc(dt).isoformat()


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between ``start`` and ``end``."""

    delta = ensure_utc(end) - ensure_utc(start)
    return int(delta.total_seconds() * 1000)


def age_in_days(reference: datetime, now: datetime) -> int:
    """Return the age of ``reference`` in whole days, rounded up.

    A partially elapsed day counts as a full day, so a key that is one
    second past its 90th birthday is 91 days old.
    """

    diff_ms = abs(elapsed_ms(reference, now))
    return math.ceil(diff_ms / MILLISECONDS_PER_DAY)


def whole_days_since(reference: datetime, now: datetime) -> int:
    """Return the number of fully elapsed days between ``reference`` and ``now``."""

    return math.floor(elapsed_ms(reference, now) / MILLISECONDS_PER_DAY)


def backup_timestamp(dt: datetime) -> str:
    """Return an ISO timestamp safe for use in file names."""

    moment = ensure_utc(dt)
    stamp = moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
    return stamp.replace(":", "-").replace(".", "-")


__all__ = [
    "Clock",
    "MILLISECONDS_PER_DAY",
    "age_in_days",
    "backup_timestamp",
    "elapsed_ms",
    "ensure_utc",
    "parse_iso",
    "to_iso",
    "utc_now",
    "whole_days_since",
]
