"""
Task completion.

The task row is committed as DONE before the webhook is queued, so a
delivery never describes a completion that did not happen. Delivery itself
runs later in the worker and cannot fail or roll back the completion.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Session

from taskhook.core.logging_config import get_logger
from taskhook.core.typing import utc_now
from taskhook.models.task import Task, TaskStatus
from taskhook.models.webhook_delivery import WebhookDelivery
from taskhook.services.delivery_queue import enqueue_delivery
from taskhook.services.webhook_dispatcher import build_payload

logger = get_logger(__name__)


def mark_task_complete(
    session: Session, task: Task, now: Optional[datetime] = None
) -> tuple[Task, WebhookDelivery]:
    """
    Transition a task to DONE and queue its task-completed webhook.

    Does not check the prior status: completing an already-done task queues
    another delivery, and duplicates are collapsed by the receiver.
    """
    now = now or utc_now()
    task.status = TaskStatus.DONE
    task.completed_at = now
    task.updated_at = now
    session.add(task)
    session.commit()
    session.refresh(task)

    logger.info("Task completed", task_id=task.id, user_id=task.user_id)

    delivery = enqueue_delivery(session, task, build_payload(task, now=now))
    return task, delivery
