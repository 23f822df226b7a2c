"""
Error reporting with optional Sentry integration.

Everything captured here is logged through structlog first; when a DSN has
been configured the same event is forwarded to Sentry, enriched with the
request/correlation ids of the current context.

Two kinds of events go through this module:
- exceptions (exhausted webhook deliveries, crashed worker jobs)
- messages (circuit breaker state changes)

Usage:
    capture_exception(exc, context={"delivery_id": 12})

    capture_message("Circuit breaker webhook-notify: closed -> open", level="warning")

    with ErrorHandler("process_due_deliveries"):
        process_due_deliveries(session)
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import structlog

from taskhook.core.context import current as current_context

logger = structlog.get_logger(__name__)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
    "is_sentry_enabled",
]

# sentry_sdk is an optional extra, imported only once a DSN is configured
_sentry_initialized: bool = False


def init_sentry(dsn: str, environment: str = "production", traces_sample_rate: float = 0.0) -> bool:
    """Initialize Sentry. Returns False (and keeps logging-only mode) on any problem."""
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    except ImportError:
        logger.warning("Sentry SDK not installed, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            integrations=[FastApiIntegration(transaction_style="endpoint"), SqlalchemyIntegration()],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop health check noise and tag events with the request context."""
    if "/health" in event.get("request", {}).get("url", ""):
        return None

    ctx = current_context()
    if ctx.request_id:
        event.setdefault("tags", {})["request_id"] = ctx.request_id
    if ctx.user_id:
        event.setdefault("user", {})["id"] = str(ctx.user_id)

    return event


def is_sentry_enabled() -> bool:
    return _sentry_initialized


def _enrich(context: Optional[Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
    return {
        **current_context().as_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
        **(context or {}),
    }


@contextmanager
def _sentry_scope(
    context: Dict[str, Any],
    level: str,
    tags: Optional[Dict[str, str]],
    fingerprint: Optional[list[str]],
) -> Iterator[Any]:
    import sentry_sdk

    with sentry_sdk.push_scope() as scope:
        for key, value in context.items():
            if value is not None:
                scope.set_extra(key, value)
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        if fingerprint:
            scope.fingerprint = fingerprint
        scope.level = level
        yield sentry_sdk


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Log an exception and forward it to Sentry.

    Returns:
        Sentry event ID or None if not sent
    """
    enriched = _enrich(context, error_type=type(exc).__name__)
    logger.error("Exception captured", exc_info=exc, **enriched)

    if not _sentry_initialized:
        return None
    try:
        with _sentry_scope(enriched, level, tags, fingerprint) as sdk:
            return sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("Failed to send exception to Sentry", error=str(e))
        return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """Log a non-exception event at `level` and forward it to Sentry."""
    enriched = _enrich(context)
    getattr(logger, level, logger.info)(message, **enriched)

    if not _sentry_initialized:
        return None
    try:
        with _sentry_scope(enriched, level, tags, None) as sdk:
            return sdk.capture_message(message, level=level)
    except Exception as e:
        logger.warning("Failed to send message to Sentry", error=str(e))
        return None


class ErrorHandler:
    """
    Context manager that captures whatever escapes the block.

    Used around scheduler job bodies so one failing run is reported without
    killing the job. Pass `reraise=True` to capture and still propagate.
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        reraise: bool = False,
    ):
        self.operation = operation
        self.context = context or {}
        self.reraise = reraise
        self.event_id: Optional[str] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            return False

        self.event_id = capture_exception(
            exc_val,
            context={"operation": self.operation, **self.context},
            fingerprint=[self.operation, type(exc_val).__name__],
        )
        return not self.reraise
