"""
Webhook Delivery Queue

Persistent queue for task-completed webhooks with bounded retries.
Deliveries are stored in the database and survive application restarts;
the delivery worker claims due rows and reports each attempt's outcome back.

Retry policy: up to `max_attempts` tries (5 by default), waiting
10s, 30s, 1m, 5m then 15m between them. A delivery that exhausts every
attempt is marked FAILED and raised as an alert, but never affects the task
whose completion produced it.

Usage:
    from taskhook.services.delivery_queue import (
        enqueue_delivery,
        claim_next_delivery,
        complete_delivery,
        fail_delivery,
    )

    delivery = enqueue_delivery(session, task, payload)

    delivery = claim_next_delivery(session)
    if delivery:
        try:
            ...  # dispatch
            complete_delivery(session, delivery.id, status_code=201)
        except Exception as e:
            fail_delivery(session, delivery.id, str(e))
"""

from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func
from sqlmodel import Session, select

from taskhook.core.config import settings
from taskhook.core.errors import capture_exception
from taskhook.core.exceptions import DeliveryExhaustedError
from taskhook.core.logging_config import get_logger
from taskhook.core.signature import canonical_json
from taskhook.core.typing import col, utc_now
from taskhook.models.task import Task
from taskhook.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from taskhook.schemas import WebhookPayload

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 1000


def backoff_delay(attempts: int, schedule: Optional[Sequence[int]] = None) -> timedelta:
    """
    Wait before the next attempt, given how many attempts have been made.

    The last step of the schedule repeats if max_attempts outgrows it.
    """
    schedule = list(schedule if schedule is not None else settings.WEBHOOK_BACKOFF_SECONDS)
    if not schedule:
        return timedelta(0)
    index = min(max(attempts, 1), len(schedule)) - 1
    return timedelta(seconds=schedule[index])


def enqueue_delivery(
    session: Session,
    task: Task,
    payload: WebhookPayload,
    max_attempts: Optional[int] = None,
) -> WebhookDelivery:
    """
    Queue a webhook for a completed task.

    No deduplication here: completing the same task twice queues two
    deliveries, and the receiver's idempotency key collapses identical ones.
    """
    delivery = WebhookDelivery(
        task_id=task.id,
        user_id=task.user_id,
        payload=canonical_json(payload.to_wire()),
        max_attempts=max_attempts or settings.WEBHOOK_MAX_ATTEMPTS,
    )
    session.add(delivery)
    session.commit()
    session.refresh(delivery)

    logger.info("Enqueued webhook delivery", delivery_id=delivery.id, task_id=task.id, user_id=task.user_id)
    return delivery


def claim_next_delivery(session: Session, now: Optional[datetime] = None) -> Optional[WebhookDelivery]:
    """
    Claim the next due delivery for processing.

    Marks it IN_PROGRESS and counts the attempt. Oldest due first.
    """
    now = now or utc_now()
    stmt = (
        select(WebhookDelivery)
        .where(
            col(WebhookDelivery.status) == DeliveryStatus.PENDING,
            col(WebhookDelivery.next_attempt_at) <= now,
        )
        .order_by(col(WebhookDelivery.next_attempt_at).asc(), col(WebhookDelivery.id).asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    delivery = session.exec(stmt).first()

    if not delivery:
        return None

    delivery.status = DeliveryStatus.IN_PROGRESS
    delivery.attempts += 1
    delivery.started_at = now
    delivery.updated_at = now

    session.add(delivery)
    session.commit()
    session.refresh(delivery)

    logger.info(
        "Claimed webhook delivery",
        delivery_id=delivery.id,
        task_id=delivery.task_id,
        attempt=delivery.attempts,
        max_attempts=delivery.max_attempts,
    )
    return delivery


def _get(session: Session, delivery_id: int, action: str) -> Optional[WebhookDelivery]:
    delivery = session.get(WebhookDelivery, delivery_id)
    if not delivery:
        logger.warning(f"Delivery not found for {action}", delivery_id=delivery_id)
    return delivery


def _finish(
    session: Session,
    delivery: WebhookDelivery,
    status: DeliveryStatus,
    error: Optional[str] = None,
    status_code: Optional[int] = None,
) -> WebhookDelivery:
    now = utc_now()
    delivery.status = status
    delivery.completed_at = now
    delivery.updated_at = now
    delivery.last_error = error[:MAX_ERROR_LENGTH] if error else None
    if status_code is not None:
        delivery.response_status = status_code
    session.add(delivery)
    session.commit()
    session.refresh(delivery)
    return delivery


def complete_delivery(
    session: Session, delivery_id: int, status_code: Optional[int] = None
) -> Optional[WebhookDelivery]:
    """Mark a delivery as successfully delivered."""
    delivery = _get(session, delivery_id, "completion")
    if not delivery:
        return None
    delivery = _finish(session, delivery, DeliveryStatus.DELIVERED, status_code=status_code)
    logger.info("Webhook delivery completed", delivery_id=delivery.id, task_id=delivery.task_id)
    return delivery


def drop_delivery(session: Session, delivery_id: int, reason: str) -> Optional[WebhookDelivery]:
    """
    Give up on a delivery because the circuit is open.

    The event is lost at this layer; there is no replay of dropped deliveries.
    """
    delivery = _get(session, delivery_id, "drop")
    if not delivery:
        return None
    delivery = _finish(session, delivery, DeliveryStatus.DROPPED, error=reason)
    logger.warning("Webhook delivery dropped", delivery_id=delivery.id, task_id=delivery.task_id, reason=reason)
    return delivery


def skip_delivery(session: Session, delivery_id: int, error: str) -> Optional[WebhookDelivery]:
    """Close a failed delivery without retrying (non-production environments)."""
    delivery = _get(session, delivery_id, "skip")
    if not delivery:
        return None
    return _finish(session, delivery, DeliveryStatus.SKIPPED, error=error)


def fail_delivery(
    session: Session,
    delivery_id: int,
    error: str,
    status_code: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[WebhookDelivery]:
    """
    Record a failed attempt.

    If attempts < max_attempts, the delivery returns to PENDING and becomes
    due again after the backoff for this attempt. Otherwise it is marked
    permanently FAILED and reported through the alert hook.
    """
    delivery = _get(session, delivery_id, "failure")
    if not delivery:
        return None

    if delivery.attempts >= delivery.max_attempts:
        delivery = _finish(session, delivery, DeliveryStatus.FAILED, error=error, status_code=status_code)
        capture_exception(
            DeliveryExhaustedError(f"Webhook permanently failed after {delivery.attempts} attempts: {error[:200]}"),
            context={
                "delivery_id": delivery.id,
                "task_id": delivery.task_id,
                "user_id": delivery.user_id,
                "attempts": delivery.attempts,
                "status_code": status_code,
            },
            fingerprint=["webhook_delivery_exhausted"],
        )
        return delivery

    now = now or utc_now()
    delay = backoff_delay(delivery.attempts)
    delivery.status = DeliveryStatus.PENDING
    delivery.started_at = None
    delivery.next_attempt_at = now + delay
    delivery.updated_at = now
    delivery.last_error = error[:MAX_ERROR_LENGTH]
    if status_code is not None:
        delivery.response_status = status_code

    session.add(delivery)
    session.commit()
    session.refresh(delivery)

    logger.info(
        "Webhook delivery failed, will retry",
        delivery_id=delivery.id,
        task_id=delivery.task_id,
        attempt=delivery.attempts,
        max_attempts=delivery.max_attempts,
        retry_in_seconds=int(delay.total_seconds()),
        error=error[:100],
    )
    return delivery


def reset_stale_deliveries(session: Session, timeout_minutes: int = 10, now: Optional[datetime] = None) -> int:
    """
    Return deliveries stuck IN_PROGRESS (worker crashed mid-attempt) to PENDING.

    Called on worker startup. The interrupted attempt still counts.
    """
    now = now or utc_now()
    cutoff = now - timedelta(minutes=timeout_minutes)

    stale = session.exec(
        select(WebhookDelivery).where(
            col(WebhookDelivery.status) == DeliveryStatus.IN_PROGRESS,
            col(WebhookDelivery.started_at) < cutoff,
        )
    ).all()

    for delivery in stale:
        delivery.status = DeliveryStatus.PENDING
        delivery.started_at = None
        delivery.next_attempt_at = now
        delivery.updated_at = now
        delivery.last_error = f"Delivery timed out after {timeout_minutes} minutes"
        session.add(delivery)

    if stale:
        session.commit()
        logger.warning("Reset stale webhook deliveries", count=len(stale))

    return len(stale)


def get_queue_stats(session: Session) -> dict[str, int]:
    """Counts per delivery status: {"pending": N, "delivered": N, ...}"""
    stats: dict[str, int] = {status.value: 0 for status in DeliveryStatus}

    rows = session.exec(
        select(WebhookDelivery.status, func.count()).group_by(WebhookDelivery.status)
    ).all()
    for status, count in rows:
        key = status.value if isinstance(status, DeliveryStatus) else str(status)
        stats[key] = count

    return stats
