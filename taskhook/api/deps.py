from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from taskhook.core.config import settings
from taskhook.core.context import bind_user
from taskhook.core.jwt import decode_token
from taskhook.core.state_store import StateStore, get_state_store
from taskhook.db import get_session
from taskhook.services.notification_store import NotificationStore
from taskhook.services.receiver import NotificationReceiver

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    """
    Caller identity from the bearer token (`sub` holds the user id).
    Tokens are issued elsewhere; this service only verifies them.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("sub") is None:
        raise credentials_exception

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise credentials_exception

    bind_user(user_id)
    return user_id


def get_current_admin_id(user_id: int = Depends(get_current_user_id)) -> int:
    if user_id not in settings.ADMIN_USER_IDS:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
        )
    return user_id


def get_store() -> StateStore:
    return get_state_store()


def get_notification_store(session: Session = Depends(get_session)) -> NotificationStore:
    return NotificationStore(session)


def get_receiver(
    store: StateStore = Depends(get_store),
    notifications: NotificationStore = Depends(get_notification_store),
) -> NotificationReceiver:
    return NotificationReceiver(store=store, notifications=notifications)
