"""
Task-completed webhook dispatcher.

Sends the signed payload to the notification service through the
"webhook-notify" circuit breaker. One `dispatch` call is one attempt of the
outer retry loop run by the delivery queue; inside it, only connection-level
errors are retried (once, after a short pause). HTTP error responses are
never retried inline: they count against the breaker and go back to the
queue with backoff.

Usage:
    dispatcher = WebhookDispatcher()
    payload = build_payload(task)
    result = dispatcher.dispatch(payload, attempt=1)
    if result.outcome == DispatchOutcome.FAILED:
        ...
"""

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import httpx

from taskhook.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from taskhook.core.config import Settings, settings
from taskhook.core.exceptions import DownstreamFailureError
from taskhook.core.logging_config import get_logger
from taskhook.core.signature import canonical_json, sign
from taskhook.core.typing import utc_now
from taskhook.models.task import Task
from taskhook.schemas import WebhookPayload

logger = get_logger(__name__)

WEBHOOK_SERVICE_NAME = "webhook-notify"

# Only these are retried inline; everything else escalates to the breaker
CONNECTION_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


class DispatchOutcome(str, Enum):
    DELIVERED = "delivered"
    DROPPED = "dropped"  # Circuit open: downstream known down, do not retry
    FAILED = "failed"  # Attempt failed, retry with backoff
    SKIPPED = "skipped"  # Failure swallowed outside production


@dataclass(frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    status_code: Optional[int] = None
    error: Optional[str] = None


def build_payload(task: Task, now: Optional[datetime] = None) -> WebhookPayload:
    """Build the webhook body for a completed task. The timestamp is fixed here."""
    timestamp = (now or utc_now()).isoformat()
    return WebhookPayload(
        userId=task.user_id,
        taskId=task.id,
        message=f"Task '{task.title}' has been completed!",
        timestamp=timestamp,
    )


def get_webhook_breaker(config: Settings = settings) -> CircuitBreaker:
    """Process-wide breaker for the notification service (created on first use)."""
    return CircuitBreakerRegistry.get(
        WEBHOOK_SERVICE_NAME,
        failure_threshold=config.CIRCUIT_FAILURE_THRESHOLD,
        success_threshold=config.CIRCUIT_SUCCESS_THRESHOLD,
        timeout=config.CIRCUIT_TIMEOUT_SECONDS,
        state_ttl=config.CIRCUIT_STATE_TTL_SECONDS,
    )


class WebhookDispatcher:
    def __init__(
        self,
        config: Settings = settings,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.breaker = breaker or get_webhook_breaker(config)
        self.client = client or httpx.Client(timeout=config.WEBHOOK_TIMEOUT_SECONDS)
        self.sleep = sleep

    def send(self, payload: WebhookPayload, attempt: int) -> httpx.Response:
        """
        POST the signed payload once.

        Raises:
            DownstreamFailureError: non-2xx response, timeout, or connection
                error that persisted through the inline retry
        """
        wire = payload.to_wire()
        body = canonical_json(wire)
        headers = {
            "X-Signature": sign(self.config.WEBHOOK_SECRET, wire),
            "Content-Type": "application/json",
            "X-Webhook-Source": self.config.WEBHOOK_SOURCE,
            "X-Attempt": str(attempt),
        }

        retries = max(0, self.config.WEBHOOK_CONNECT_RETRIES)
        delay = self.config.WEBHOOK_CONNECT_RETRY_DELAY_MS / 1000

        connect_attempt = 0
        while True:
            try:
                response = self.client.post(
                    self.config.WEBHOOK_URL,
                    content=body.encode("utf-8"),
                    headers=headers,
                    timeout=self.config.WEBHOOK_TIMEOUT_SECONDS,
                )
            except CONNECTION_ERRORS as exc:
                if connect_attempt >= retries:
                    raise DownstreamFailureError(f"Webhook connection failed: {exc}") from exc
                logger.warning(
                    "Webhook connection failed, retrying",
                    task_id=payload.taskId,
                    error=str(exc),
                    delay_seconds=delay,
                )
                self.sleep(delay)
                connect_attempt += 1
            except httpx.HTTPError as exc:
                raise DownstreamFailureError(f"Webhook request failed: {exc}") from exc
            else:
                return self._check_response(response, payload, attempt)

    def _check_response(self, response: httpx.Response, payload: WebhookPayload, attempt: int) -> httpx.Response:
        if not response.is_success:
            logger.error(
                "Webhook failed",
                task_id=payload.taskId,
                user_id=payload.userId,
                status_code=response.status_code,
                response=response.text[:500],
                attempt=attempt,
            )
            raise DownstreamFailureError(
                f"Webhook failed: {response.status_code} {response.text[:200]}",
                status=response.status_code,
            )

        return response

    def dispatch(self, payload: WebhookPayload, attempt: int = 1) -> DispatchResult:
        """Run one delivery attempt through the circuit breaker and classify it."""
        result = self.breaker.call(lambda: self.send(payload, attempt))

        if result.ok:
            response: httpx.Response = result.value
            logger.info(
                "Webhook sent successfully",
                task_id=payload.taskId,
                user_id=payload.userId,
                status_code=response.status_code,
                attempt=attempt,
            )
            return DispatchResult(DispatchOutcome.DELIVERED, status_code=response.status_code)

        if result.rejected:
            logger.warning(
                "Circuit breaker is OPEN, skipping webhook",
                task_id=payload.taskId,
                user_id=payload.userId,
                circuit_breaker_status="open",
            )
            return DispatchResult(DispatchOutcome.DROPPED, error=f"Circuit breaker is OPEN for {self.breaker.name}")

        error = result.error
        status_code = getattr(error, "status", None)
        logger.error(
            "Webhook exception",
            task_id=payload.taskId,
            error=str(error),
            error_type=type(error).__name__,
            attempt=attempt,
        )

        if not self.config.is_production:
            logger.warning("Skipping webhook retry in local/testing environment", task_id=payload.taskId)
            return DispatchResult(DispatchOutcome.SKIPPED, status_code=status_code, error=str(error))

        return DispatchResult(DispatchOutcome.FAILED, status_code=status_code, error=str(error))

    def close(self) -> None:
        self.client.close()
