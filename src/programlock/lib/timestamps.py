"""Conversion of instants between Python and the lock table.

The table stores naive ``DATETIME`` values that are always UTC; Python code
works with timezone-aware UTC datetimes.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def to_store(value: datetime) -> datetime:
    """Return a naive UTC datetime suitable for a ``DateTime`` column.

    Naive input is assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_store(value: Optional[datetime]) -> Optional[datetime]:
    """Return an aware UTC datetime for a value read from the table."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso8601(value: datetime) -> str:
    """Render an instant as ISO-8601 with an explicit UTC offset.

    Microseconds are kept when present, so ``datetime.fromisoformat`` gives
    back the same instant.
    """
    return from_store(value).isoformat()
