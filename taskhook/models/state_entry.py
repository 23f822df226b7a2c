"""
Shared key-value state.

Backs the circuit breaker snapshots, idempotency keys and the notification
id counter so every process instance observes the same values, and state
survives deploys/restarts until its TTL lapses.
"""

from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel

from taskhook.core.typing import utc_now


class StateEntry(SQLModel, table=True):
    """One key in the shared state store."""

    __tablename__ = "state_entry"

    key: str = Field(primary_key=True, max_length=255)  # e.g. "circuit_breaker:webhook-notify"
    value: str
    expires_at: Optional[datetime] = Field(default=None, index=True)  # None = never expires
    updated_at: datetime = Field(default_factory=utc_now)
