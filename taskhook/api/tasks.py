from typing import Any

from fastapi import APIRouter, Depends
from sqlmodel import Session

from taskhook.api import deps
from taskhook.core.exceptions import ForbiddenError, NotFoundError, TaskhookError
from taskhook.db import get_session
from taskhook.models.task import Task, TaskStatus
from taskhook.schemas import TaskOut
from taskhook.services.task_service import mark_task_complete

router = APIRouter()


class TaskAlreadyCompletedError(TaskhookError):
    """Task is already completed"""

    status_code = 400
    code = "TASK_ALREADY_COMPLETED"


@router.post("/{task_id}/complete", response_model=TaskOut)
def complete_task(
    task_id: int,
    session: Session = Depends(get_session),
    user_id: int = Depends(deps.get_current_user_id),
) -> Any:
    """
    Mark one of the caller's tasks as done.

    The task-completed webhook is queued and delivered by the worker; the
    response does not wait for it and is not affected by its outcome.
    """
    task = session.get(Task, task_id)
    if not task:
        raise NotFoundError("Task not found")
    if task.user_id != user_id:
        raise ForbiddenError("Not allowed to modify this task")
    if task.status == TaskStatus.DONE:
        raise TaskAlreadyCompletedError()

    task, _ = mark_task_complete(session, task)
    return task
