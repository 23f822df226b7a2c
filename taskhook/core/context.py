"""
Per-request identity shared by the request middleware, auth dependencies and
error reporting.

One immutable RequestContext lives in a ContextVar; binding a value replaces
the whole record, so a worker job or a background thread that never entered
a request simply sees the empty default.
"""

import uuid
from contextvars import ContextVar, Token
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class RequestContext:
    request_id: Optional[str] = None
    correlation_id: Optional[str] = None
    user_id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


EMPTY = RequestContext()

_current: ContextVar[RequestContext] = ContextVar("taskhook_request_context", default=EMPTY)


def new_request_id() -> str:
    """`req_` followed by 16 hex chars."""
    return f"req_{uuid.uuid4().hex[:16]}"


def current() -> RequestContext:
    return _current.get()


def bind_request(request_id: str, correlation_id: Optional[str] = None) -> Token:
    """Start a fresh context for an incoming request; pass the token to `reset`."""
    return _current.set(RequestContext(request_id=request_id, correlation_id=correlation_id))


def bind_user(user_id: int) -> None:
    """Attach the authenticated user (the bearer token's `sub`)."""
    _current.set(replace(_current.get(), user_id=user_id))


def reset(token: Optional[Token] = None) -> None:
    if token is not None:
        _current.reset(token)
    else:
        _current.set(EMPTY)
