"""Shared SQLAlchemy base class and timestamp helpers."""
from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base class for ORM models."""

    pass


def utcnow() -> datetime:
    """Return the current UTC time as a naive timestamp.

    Every column stores naive UTC so values compare consistently across
    SQLite and PostgreSQL.
    """

    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware timestamp to naive UTC; naive values pass through."""

    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
