"""
Notification service: receives signed task-completed webhooks and serves
each user's notification inbox.

Run with `uvicorn taskhook.notify_app:app --port 3001`.
"""

from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI

from taskhook.api import notifications, notify
from taskhook.core.config import settings
from taskhook.core.errors import init_sentry
from taskhook.core.exceptions import register_exception_handlers
from taskhook.core.logging_config import get_logger
from taskhook.db import create_db_and_tables
from taskhook.middleware.context import RequestContextMiddleware

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Notification service starting", environment=settings.APP_ENV, state_backend=settings.STATE_BACKEND)
    if not settings.WEBHOOK_SECRET:
        logger.warning("WEBHOOK_SECRET is empty, every webhook will be rejected")
    init_sentry(settings.SENTRY_DSN, environment=settings.APP_ENV)
    create_db_and_tables()
    yield


app = FastAPI(title=f"{settings.PROJECT_NAME} Notifications", lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))
register_exception_handlers(app)

app.include_router(notify.router)
app.include_router(notifications.router)


@app.get("/health")
def health():
    return {
        "status": "healthy",
        "service": "notification-service",
        "store": settings.STATE_BACKEND,
    }
