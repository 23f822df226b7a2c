"""
Delivery worker: drains the webhook delivery queue out-of-band.

Runs as an APScheduler interval job inside the task API process (when
RUN_DELIVERY_WORKER is set), or standalone via
`python -m taskhook.services.delivery_worker`.
"""

import asyncio
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError
from sqlmodel import Session

from taskhook.core.config import settings
from taskhook.core.errors import ErrorHandler
from taskhook.core.logging_config import get_logger
from taskhook.core.state_store import DatabaseStateStore, get_state_store
from taskhook.db import engine
from taskhook.models.webhook_delivery import WebhookDelivery
from taskhook.schemas import WebhookPayload
from taskhook.services.delivery_queue import (
    claim_next_delivery,
    complete_delivery,
    drop_delivery,
    fail_delivery,
    reset_stale_deliveries,
    skip_delivery,
)
from taskhook.services.webhook_dispatcher import DispatchOutcome, WebhookDispatcher

logger = get_logger(__name__)

scheduler = AsyncIOScheduler()

_dispatcher: Optional[WebhookDispatcher] = None


def get_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher()
    return _dispatcher


def process_delivery(session: Session, delivery: WebhookDelivery, dispatcher: WebhookDispatcher) -> DispatchOutcome:
    """Run one attempt for a claimed delivery and record its outcome."""
    try:
        payload = WebhookPayload.model_validate_json(delivery.payload)
    except ValidationError as exc:
        drop_delivery(session, delivery.id, reason=f"Unreadable payload: {exc}")
        return DispatchOutcome.DROPPED

    try:
        result = dispatcher.dispatch(payload, attempt=delivery.attempts)
    except Exception as exc:
        # Breaker state unreachable or contended; the attempt counts as failed
        delivery_id = delivery.id
        logger.error("Webhook dispatch crashed", delivery_id=delivery_id, error=str(exc), error_type=type(exc).__name__)
        session.rollback()
        fail_delivery(session, delivery_id, error=f"{type(exc).__name__}: {exc}")
        return DispatchOutcome.FAILED

    if result.outcome == DispatchOutcome.DELIVERED:
        complete_delivery(session, delivery.id, status_code=result.status_code)
    elif result.outcome == DispatchOutcome.DROPPED:
        drop_delivery(session, delivery.id, reason=result.error or "circuit open")
    elif result.outcome == DispatchOutcome.SKIPPED:
        skip_delivery(session, delivery.id, error=result.error or "skipped")
    else:
        fail_delivery(session, delivery.id, error=result.error or "unknown error", status_code=result.status_code)

    return result.outcome


def process_due_deliveries(
    session: Session,
    dispatcher: Optional[WebhookDispatcher] = None,
    batch_size: Optional[int] = None,
) -> int:
    """Claim and process due deliveries until none are due or the batch is full."""
    dispatcher = dispatcher or get_dispatcher()
    batch_size = batch_size or settings.DELIVERY_BATCH_SIZE

    processed = 0
    while processed < batch_size:
        delivery = claim_next_delivery(session)
        if not delivery:
            break
        process_delivery(session, delivery, dispatcher)
        processed += 1

    if processed:
        logger.info("Processed webhook deliveries", count=processed)
    return processed


def job_process_deliveries() -> None:
    with ErrorHandler("process_due_deliveries"):
        with Session(engine) as session:
            process_due_deliveries(session)


def job_reset_stale_deliveries() -> None:
    with ErrorHandler("reset_stale_deliveries"):
        with Session(engine) as session:
            reset_stale_deliveries(session, timeout_minutes=settings.DELIVERY_STALE_MINUTES)


def job_purge_expired_state() -> None:
    store = get_state_store()
    if isinstance(store, DatabaseStateStore):
        with ErrorHandler("purge_expired_state"):
            store.purge_expired()


def start_delivery_worker() -> AsyncIOScheduler:
    """Recover interrupted deliveries and start polling the queue."""
    with Session(engine) as session:
        reset_stale_deliveries(session, timeout_minutes=settings.DELIVERY_STALE_MINUTES)

    scheduler.add_job(
        job_process_deliveries,
        IntervalTrigger(seconds=settings.DELIVERY_POLL_INTERVAL_SECONDS),
        id="process_webhook_deliveries",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        job_reset_stale_deliveries,
        IntervalTrigger(minutes=settings.DELIVERY_STALE_MINUTES),
        id="reset_stale_deliveries",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        job_purge_expired_state,
        IntervalTrigger(hours=1),
        id="purge_expired_state",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    if not scheduler.running:
        scheduler.start()
    logger.info("Delivery worker started", poll_interval_seconds=settings.DELIVERY_POLL_INTERVAL_SECONDS)
    return scheduler


def stop_delivery_worker() -> None:
    global _dispatcher
    if scheduler.running:
        scheduler.shutdown(wait=False)
    if _dispatcher is not None:
        _dispatcher.close()
        _dispatcher = None


async def _run_forever() -> None:
    from taskhook.db import create_db_and_tables

    create_db_and_tables()
    start_delivery_worker()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        stop_delivery_worker()


if __name__ == "__main__":
    asyncio.run(_run_forever())
