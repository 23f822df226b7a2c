"""
Notification inbox API.

Every route acts on the caller's own notifications: a notification owned by
another user is reported as 403, an unknown or expired one as 404.
"""

import math
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from taskhook.api import deps
from taskhook.core.exceptions import ForbiddenError, NotFoundError
from taskhook.models.notification import Notification, NotificationStatus
from taskhook.schemas import (
    DeletedCountResponse,
    DeletedOneResponse,
    NotificationEnvelope,
    NotificationList,
    NotificationOut,
)
from taskhook.services.notification_store import NotificationStore

router = APIRouter(prefix="/notifications", tags=["notifications"])


def to_out(notification: Notification) -> NotificationOut:
    return NotificationOut(
        id=notification.id,
        userId=notification.user_id,
        taskId=notification.task_id,
        message=notification.message,
        timestamp=notification.timestamp,
        status=notification.status,
        receivedAt=notification.received_at,
        readAt=notification.read_at,
    )


def get_owned_notification(
    notification_id: int,
    user_id: int,
    store: NotificationStore,
) -> Notification:
    notification = store.get_by_id(notification_id)
    if not notification:
        raise NotFoundError("Notification not found")
    if notification.user_id != user_id:
        raise ForbiddenError("Not allowed to access this notification")
    return notification


@router.get("", response_model=NotificationList)
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[NotificationStatus] = None,
    user_id: int = Depends(deps.get_current_user_id),
    store: NotificationStore = Depends(deps.get_notification_store),
) -> Any:
    """Caller's notifications, newest first."""
    items = store.list_by_user(user_id, page=page, page_size=limit, status=status)
    total = store.count_by_user(user_id, status=status)
    return NotificationList(
        data=[to_out(n) for n in items],
        meta={"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    )


@router.get("/{notification_id}", response_model=NotificationEnvelope)
def get_notification(
    notification_id: int,
    user_id: int = Depends(deps.get_current_user_id),
    store: NotificationStore = Depends(deps.get_notification_store),
) -> Any:
    notification = get_owned_notification(notification_id, user_id, store)
    return NotificationEnvelope(data=to_out(notification))


@router.delete("", response_model=DeletedCountResponse)
def delete_all_notifications(
    user_id: int = Depends(deps.get_current_user_id),
    store: NotificationStore = Depends(deps.get_notification_store),
) -> Any:
    count = store.delete_all_by_user(user_id)
    return {
        "data": {
            "message": f"{count} notification(s) deleted successfully",
            "deleted_count": count,
        }
    }


@router.delete("/{notification_id}", response_model=DeletedOneResponse)
def delete_notification(
    notification_id: int,
    user_id: int = Depends(deps.get_current_user_id),
    store: NotificationStore = Depends(deps.get_notification_store),
) -> Any:
    notification = get_owned_notification(notification_id, user_id, store)
    deleted = to_out(notification)
    store.delete_by_id(notification_id)
    return {"data": {"message": "Notification deleted successfully", "deleted": deleted}}


@router.patch("/{notification_id}/read", response_model=NotificationEnvelope)
def mark_notification_read(
    notification_id: int,
    user_id: int = Depends(deps.get_current_user_id),
    store: NotificationStore = Depends(deps.get_notification_store),
) -> Any:
    get_owned_notification(notification_id, user_id, store)
    notification = store.mark_read(notification_id)
    if not notification:
        raise NotFoundError("Notification not found")
    return NotificationEnvelope(data=to_out(notification))
