"""
Type helpers for SQLModel/SQLAlchemy columns and timezone handling.

SQLModel fields are declared with Python types (e.g., `user_id: int`) but at
the class level they're InstrumentedAttribute descriptors with column methods
like .desc() and .in_(). Type checkers see plain Python types, so `col()`
bridges that gap.
"""

from typing import TYPE_CHECKING, Optional, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    Usage:
        select(Notification).order_by(col(Notification.received_at).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes read back from the database.

    SQLite drops tzinfo on round trip; every timestamp we write is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
