"""SQLAlchemy-backed repositories.

Timestamps are written in UTC; SQLite hands them back naive, so rows are
read back through :func:`aware`.
"""

from __future__ import annotations

from datetime import datetime, timezone


def to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
