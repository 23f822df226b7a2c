"""
Webhook Delivery Model

Persistent queue of outbound task-completed webhooks. A row is written when
a task is completed and worked out-of-band by the delivery worker, so the
completion request never waits on the notification service.

The signed payload is frozen in `payload` at enqueue time: retries resend the
exact same body (same timestamp), which keeps the signature and the
receiver's idempotency key stable across attempts.

Usage:
    from taskhook.models.webhook_delivery import WebhookDelivery, DeliveryStatus

    delivery = WebhookDelivery(task_id=1, user_id=7, payload='{"...": "..."}')
    if delivery.status == DeliveryStatus.PENDING:
        ...
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from taskhook.core.typing import utc_now


class DeliveryStatus(str, Enum):
    """Status of a webhook delivery."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    DROPPED = "dropped"  # Circuit open, not retried
    SKIPPED = "skipped"  # Failure swallowed outside production
    FAILED = "failed"  # All attempts exhausted


class WebhookDelivery(SQLModel, table=True):
    """
    One task-completed webhook and its retry bookkeeping.

    Attributes:
        id: Primary key
        task_id: Completed task the webhook announces
        user_id: Owner of the task (recipient of the notification)
        payload: JSON of the WebhookPayload, built once at enqueue time
        status: Current delivery status
        attempts: Number of dispatch attempts so far
        max_attempts: Attempts before the delivery is marked FAILED
        next_attempt_at: Earliest time the worker may claim it again
        last_error: Error message from the most recent failure
        response_status: HTTP status of the most recent response, if any
    """

    __tablename__ = "webhook_delivery"

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: int = Field(index=True)
    user_id: int = Field(index=True)
    payload: str
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    next_attempt_at: datetime = Field(default_factory=utc_now)
    last_error: Optional[str] = None
    response_status: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    __table_args__ = (
        # Worker query: status + next_attempt_at
        Index("ix_webhook_delivery_due", "status", "next_attempt_at"),
        # Stale in-progress detection
        Index("ix_webhook_delivery_stale", "status", "started_at"),
    )
