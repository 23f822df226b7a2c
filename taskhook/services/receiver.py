"""
Idempotent webhook receiver (notification service side).

Turns a signed task-completed webhook into at most one notification per
logical event. The event is identified by (userId, taskId, timestamp); the
sender freezes the timestamp, so every retry of one delivery maps to the
same idempotency key.

Flow:
1. verify the signature (nothing is touched before this passes)
2. validate the payload shape
3. look up the idempotency key; a hit returns the recorded id (duplicate)
4. otherwise allocate an id from the shared counter and claim the key with
   set-if-absent; losing that race means a concurrent delivery won, and its
   id is returned instead
5. persist the notification

The id counter is seeded from the highest stored notification id the first
time it is used, so a fresh in-memory store never reissues a persisted id.
"""

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from taskhook.core.config import settings
from taskhook.core.exceptions import PayloadMalformedError, SignatureInvalidError
from taskhook.core.logging_config import get_logger
from taskhook.core.signature import verify
from taskhook.core.state_store import StateStore, StateStoreContentionError
from taskhook.models.notification import Notification, NotificationStatus
from taskhook.schemas import WebhookPayload
from taskhook.services.notification_store import NotificationStore

logger = get_logger(__name__)

NOTIFICATION_ID_COUNTER = "notification:id:counter"
MAX_CLAIM_ATTEMPTS = 5


@dataclass(frozen=True)
class ReceiveResult:
    notification_id: int
    created: bool


def idempotency_key(payload: WebhookPayload) -> str:
    return f"idempotency:{payload.userId}:{payload.taskId}:{payload.timestamp}"


def validate_payload(payload: Any) -> WebhookPayload:
    try:
        return WebhookPayload.model_validate(payload)
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise PayloadMalformedError("Invalid request payload", details=details) from exc


class NotificationReceiver:
    def __init__(
        self,
        store: StateStore,
        notifications: NotificationStore,
        secret: str = settings.WEBHOOK_SECRET,
        idempotency_ttl: int = settings.IDEMPOTENCY_TTL_SECONDS,
    ):
        self.store = store
        self.notifications = notifications
        self.secret = secret
        self.idempotency_ttl = idempotency_ttl

    def _seed_counter(self) -> None:
        """Start the id counter above every persisted notification.

        A memory-backed counter starts empty after a restart while the
        notification table keeps its rows.
        """
        if self.store.get(NOTIFICATION_ID_COUNTER) is None:
            self.store.set_if_absent(NOTIFICATION_ID_COUNTER, str(self.notifications.max_id()))

    def receive(self, signature: Optional[str], payload: Any) -> ReceiveResult:
        """
        Process one webhook delivery.

        Raises:
            SignatureInvalidError: signature missing or wrong
            PayloadMalformedError: payload fails validation
        """
        if not signature:
            raise SignatureInvalidError("X-Signature header is required")
        if not verify(signature, self.secret, payload):
            logger.warning("Invalid webhook signature")
            raise SignatureInvalidError("Invalid webhook signature")

        event = validate_payload(payload)
        key = idempotency_key(event)

        self._seed_counter()

        for _ in range(MAX_CLAIM_ATTEMPTS):
            existing = self.store.get(key)
            if existing is not None:
                logger.info(
                    "Duplicate webhook delivery",
                    notification_id=int(existing),
                    user_id=event.userId,
                    task_id=event.taskId,
                )
                return ReceiveResult(notification_id=int(existing), created=False)

            notification_id = self.store.incr(NOTIFICATION_ID_COUNTER)
            if self.store.set_if_absent(key, str(notification_id), ttl=self.idempotency_ttl):
                break
            logger.info("Concurrent delivery claimed idempotency key first", key=key)
        else:
            raise StateStoreContentionError(f"Could not claim idempotency key {key}")

        try:
            self.notifications.save(
                Notification(
                    id=notification_id,
                    user_id=event.userId,
                    task_id=event.taskId,
                    message=event.message,
                    timestamp=event.timestamp,
                    status=NotificationStatus.UNREAD,
                )
            )
        except Exception:
            # Let a retry of this delivery claim the key again
            self.store.delete(key)
            raise

        logger.info(
            "Notification received",
            notification_id=notification_id,
            user_id=event.userId,
            task_id=event.taskId,
        )
        return ReceiveResult(notification_id=notification_id, created=True)
