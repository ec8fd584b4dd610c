"""
core/timeutil.py -- UTC clock helpers shared by every store and manager.

Timestamps are persisted as ISO 8601 strings with a fixed microsecond
precision and an explicit +00:00 offset. Fixed width means lexical order in
the database equals chronological order, so range filters and ORDER BY work
on the raw string columns.

Every component accepts a Clock (a zero-argument callable returning an aware
UTC datetime). Production code uses utc_now; tests inject a fake clock.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize an aware datetime as a fixed-width UTC ISO string.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
