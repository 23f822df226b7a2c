from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime

from taskhook.models.notification import NotificationStatus
from taskhook.models.task import TaskStatus


def parse_iso8601(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting the trailing "Z" form."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class WebhookPayload(BaseModel):
    """
    Body of the task-completed webhook, identical on both sides of the wire.

    Built once per delivery; the timestamp is part of both the signature and
    the receiver's idempotency key, so it must never be regenerated.
    """

    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")

    userId: int = Field(gt=0)
    taskId: int = Field(gt=0)
    message: str = Field(min_length=1, max_length=500)
    timestamp: str

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_iso8601(cls, value: str) -> str:
        try:
            parse_iso8601(value)
        except ValueError:
            raise ValueError("timestamp must be a valid ISO 8601 date")
        return value

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump()


class NotificationOut(BaseModel):
    id: int
    userId: int
    taskId: int
    message: str
    timestamp: str
    status: NotificationStatus
    receivedAt: datetime
    readAt: Optional[datetime] = None


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class NotificationList(BaseModel):
    data: List[NotificationOut]
    meta: PageMeta


class NotificationEnvelope(BaseModel):
    data: NotificationOut


class NotifyAccepted(BaseModel):
    message: str
    notification_id: int


class NotifyResponse(BaseModel):
    data: NotifyAccepted


class DeletedCount(BaseModel):
    message: str
    deleted_count: int


class DeletedCountResponse(BaseModel):
    data: DeletedCount


class DeletedOne(BaseModel):
    message: str
    deleted: NotificationOut


class DeletedOneResponse(BaseModel):
    data: DeletedOne


class TaskOut(BaseModel):
    id: int
    user_id: int
    title: str
    status: TaskStatus
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CircuitBreakerStatusOut(BaseModel):
    service: str
    state: str
    failures: int
    successes: int
    last_failure: Optional[float] = None
