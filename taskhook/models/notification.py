"""
Notification model (notification service side).

The id is allocated from the shared counter by the receiver, never by the
database, so ids stay monotonic across instances.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import BigInteger, Column, Index

from taskhook.core.typing import utc_now


class NotificationStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"


class Notification(SQLModel, table=True):
    id: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    user_id: int = Field(index=True)
    task_id: int
    message: str = Field(max_length=500)
    timestamp: str  # ISO-8601 string exactly as signed by the sender
    status: NotificationStatus = Field(default=NotificationStatus.UNREAD)
    received_at: datetime = Field(default_factory=utc_now)
    read_at: Optional[datetime] = None
    expires_at: Optional[datetime] = Field(default=None, index=True)  # Set on save, never extended

    __table_args__ = (
        # Per-user inbox, newest first
        Index("ix_notification_user_recent", "user_id", "received_at"),
    )
