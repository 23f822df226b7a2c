"""
Admin endpoints for the webhook subsystem: circuit breaker inspection and
reset, delivery queue counts. Restricted to ADMIN_USER_IDS.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlmodel import Session

from taskhook.api import deps
from taskhook.core.circuit_breaker import CircuitBreakerRegistry
from taskhook.core.exceptions import NotFoundError
from taskhook.core.logging_config import get_logger
from taskhook.db import get_session
from taskhook.schemas import CircuitBreakerStatusOut
from taskhook.services.delivery_queue import get_queue_stats
from taskhook.services.webhook_dispatcher import get_webhook_breaker

logger = get_logger(__name__)

router = APIRouter()


@router.get("/circuit-breakers", response_model=List[CircuitBreakerStatusOut])
def list_circuit_breakers(admin_id: int = Depends(deps.get_current_admin_id)) -> Any:
    # Make sure the webhook breaker is listed even before its first call
    get_webhook_breaker()
    return list(CircuitBreakerRegistry.get_all_statuses().values())


@router.post("/circuit-breakers/{name}/reset", response_model=CircuitBreakerStatusOut)
def reset_circuit_breaker(name: str, admin_id: int = Depends(deps.get_current_admin_id)) -> Any:
    get_webhook_breaker()
    if name not in CircuitBreakerRegistry.get_all_states():
        raise NotFoundError(f"Unknown circuit breaker: {name}")

    breaker = CircuitBreakerRegistry.get(name)
    breaker.reset()
    logger.info("Circuit breaker reset by admin", breaker=name, admin_id=admin_id)
    return breaker.status()


@router.get("/deliveries/stats")
def delivery_stats(
    session: Session = Depends(get_session),
    admin_id: int = Depends(deps.get_current_admin_id),
) -> Dict[str, int]:
    return get_queue_stats(session)
