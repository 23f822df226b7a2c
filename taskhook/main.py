from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI

from taskhook.api import admin, tasks
from taskhook.core.circuit_breaker import set_notification_callback
from taskhook.core.config import settings
from taskhook.core.errors import capture_message, init_sentry
from taskhook.core.exceptions import register_exception_handlers
from taskhook.core.logging_config import get_logger
from taskhook.db import create_db_and_tables
from taskhook.middleware.context import RequestContextMiddleware
from taskhook.services.delivery_worker import start_delivery_worker, stop_delivery_worker

logger = get_logger(__name__)


def notify_circuit_change(name: str, old_state: str, new_state: str) -> None:
    capture_message(
        f"Circuit breaker {name}: {old_state} -> {new_state}",
        level="warning" if new_state == "open" else "info",
        context={"breaker": name, "old_state": old_state, "new_state": new_state},
        tags={"component": "circuit_breaker"},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Task API starting", environment=settings.APP_ENV)
    init_sentry(settings.SENTRY_DSN, environment=settings.APP_ENV)
    create_db_and_tables()
    set_notification_callback(notify_circuit_change)

    if settings.RUN_DELIVERY_WORKER:
        start_delivery_worker()
    else:
        logger.info("RUN_DELIVERY_WORKER is false, skipping delivery worker in this process")

    try:
        yield
    finally:
        if settings.RUN_DELIVERY_WORKER:
            stop_delivery_worker()
        set_notification_callback(None)


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))
register_exception_handlers(app)

app.include_router(tasks.router, prefix=f"{settings.API_V1_STR}/tasks", tags=["tasks"])
app.include_router(admin.router, prefix=f"{settings.API_V1_STR}/admin", tags=["admin"])


@app.get("/health")
def health():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "task-api"}
