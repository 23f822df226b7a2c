"""
Notification Store

Persists notifications keyed by id with a per-user, newest-first view for
the inbox. Every notification expires `ttl_seconds` after it is saved;
updates (mark read) keep the original expiry. Expired rows are invisible to
every read and removed by `purge_expired`.

Ownership is not checked here: the API layer compares the notification's
user_id with the caller before exposing or mutating it.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, delete, select

from taskhook.core.config import settings
from taskhook.core.logging_config import get_logger
from taskhook.core.typing import col, utc_now
from taskhook.models.notification import Notification, NotificationStatus

logger = get_logger(__name__)


class NotificationStore:
    def __init__(
        self,
        session: Session,
        ttl_seconds: int = settings.NOTIFICATION_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def _live(self):
        return col(Notification.expires_at) > self.clock()

    def _user_filter(self, stmt, user_id: int, status: Optional[NotificationStatus]):
        stmt = stmt.where(col(Notification.user_id) == user_id, self._live())
        if status is not None:
            stmt = stmt.where(col(Notification.status) == status)
        return stmt

    def save(self, notification: Notification) -> Notification:
        if notification.received_at is None:
            notification.received_at = self.clock()
        if notification.expires_at is None:
            notification.expires_at = notification.received_at + self.ttl
        self.session.add(notification)
        self.session.commit()
        self.session.refresh(notification)
        return notification

    def list_by_user(
        self,
        user_id: int,
        page: int = 1,
        page_size: int = 10,
        status: Optional[NotificationStatus] = None,
    ) -> List[Notification]:
        """One page of a user's notifications, newest first (page is 1-based)."""
        page = max(page, 1)
        stmt = self._user_filter(select(Notification), user_id, status)
        stmt = (
            stmt.order_by(col(Notification.received_at).desc(), col(Notification.id).desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(self.session.exec(stmt).all())

    def count_by_user(self, user_id: int, status: Optional[NotificationStatus] = None) -> int:
        stmt = self._user_filter(select(func.count()).select_from(Notification), user_id, status)
        return self.session.exec(stmt).one()

    def max_id(self) -> int:
        """Highest id ever stored, expired rows included; 0 when empty."""
        return self.session.exec(select(func.max(Notification.id))).one() or 0

    def get_by_id(self, notification_id: int) -> Optional[Notification]:
        stmt = select(Notification).where(col(Notification.id) == notification_id, self._live())
        return self.session.exec(stmt).first()

    def mark_read(self, notification_id: int) -> Optional[Notification]:
        notification = self.get_by_id(notification_id)
        if not notification:
            return None
        if notification.status != NotificationStatus.READ:
            notification.status = NotificationStatus.READ
            notification.read_at = self.clock()
            self.session.add(notification)
            self.session.commit()
            self.session.refresh(notification)
        return notification

    def delete_by_id(self, notification_id: int) -> Optional[Notification]:
        """Delete one notification. Returns the deleted row, or None if absent."""
        notification = self.get_by_id(notification_id)
        if not notification:
            return None
        self.session.delete(notification)
        self.session.commit()
        return notification

    def delete_all_by_user(self, user_id: int) -> int:
        stmt = (
            delete(Notification)
            .where(col(Notification.user_id) == user_id, self._live())
            .execution_options(synchronize_session="fetch")
        )
        result = self.session.execute(stmt)
        # Expired rows go too; they are not counted
        self.session.execute(
            delete(Notification)
            .where(col(Notification.user_id) == user_id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        count = result.rowcount or 0
        logger.info("Deleted notifications", user_id=user_id, count=count)
        return count

    def purge_expired(self) -> int:
        result = self.session.execute(
            delete(Notification)
            .where(col(Notification.expires_at) <= self.clock())
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        count = result.rowcount or 0
        if count:
            logger.info("Purged expired notifications", count=count)
        return count
