"""
Shared state store.

Small key-value interface with per-key TTLs and the atomic primitives the
circuit breaker and the notification receiver need to stay correct when
several process instances run at once:

- set_if_absent: first writer wins (idempotency keys)
- compare_and_set: optimistic update of a known value (breaker snapshots)
- incr: monotonic counter (notification ids)

Two backends:
- InMemoryStateStore: single process (tests, local development)
- DatabaseStateStore: `state_entry` table, shared by every instance using
  the same database

Usage:
    store = get_state_store()
    if store.set_if_absent("idempotency:1:2:2024-01-01T00:00:00Z", "17", ttl=600):
        ...
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from taskhook.core.config import settings
from taskhook.core.typing import as_utc
from taskhook.models.state_entry import StateEntry

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Bounded retries for optimistic updates under contention
MAX_CAS_ATTEMPTS = 50


class StateStoreContentionError(RuntimeError):
    """Optimistic update kept losing to concurrent writers."""


class StateStore(ABC):
    """
    Key-value store with TTLs. Values are strings; `ttl=None` means the key
    never expires. Expired keys behave exactly like absent keys.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        """Store the value only if the key is absent. Returns True if stored."""

    @abstractmethod
    def compare_and_set(
        self, key: str, expected: Optional[str], new: str, ttl: Optional[float] = None
    ) -> bool:
        """
        Replace the value only if it currently equals `expected`
        (`expected=None` means "only if absent"). Returns True if replaced.
        """

    @abstractmethod
    def incr(self, key: str) -> int:
        """Atomically increment an integer counter (absent = 0), keeping its TTL."""

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, None if absent or without expiry."""


class InMemoryStateStore(StateStore):
    """Lock-guarded dict of key -> (value, deadline)."""

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = Lock()

    def _deadline(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self.clock() + ttl

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        """Return the live entry, evicting it if expired. Caller holds the lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        deadline = entry[1]
        if deadline is not None and deadline <= self.clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._deadline(ttl))

    def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True

    def compare_and_set(
        self, key: str, expected: Optional[str], new: str, ttl: Optional[float] = None
    ) -> bool:
        with self._lock:
            entry = self._live(key)
            current = entry[0] if entry else None
            if current != expected:
                return False
            self._data[key] = (new, self._deadline(ttl))
            return True

    def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                value, deadline = 1, None
            else:
                value, deadline = int(entry[0]) + 1, entry[1]
            self._data[key] = (str(value), deadline)
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self.clock()

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class DatabaseStateStore(StateStore):
    """
    State kept in the `state_entry` table.

    The primary key on `key` is the serialization point for set_if_absent;
    compare_and_set is a conditional UPDATE whose row count tells whether
    this writer won.
    """

    def __init__(self, engine: Engine, clock: Clock = time.time):
        self.engine = engine
        self.clock = clock
        self._table = StateEntry.__table__  # type: ignore[attr-defined]

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _deadline(self, ttl: Optional[float]) -> Optional[datetime]:
        if ttl is None:
            return None
        return datetime.fromtimestamp(self.clock() + ttl, tz=timezone.utc)

    def _is_live(self, now: datetime):
        t = self._table
        return or_(t.c.expires_at.is_(None), t.c.expires_at > now)

    def get(self, key: str) -> Optional[str]:
        t = self._table
        with self.engine.connect() as conn:
            return conn.execute(
                select(t.c.value).where(t.c.key == key, self._is_live(self._now()))
            ).scalar_one_or_none()

    def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        t = self._table
        now = self._now()
        values = {"value": value, "expires_at": self._deadline(ttl), "updated_at": now}
        for _ in range(MAX_CAS_ATTEMPTS):
            with self.engine.begin() as conn:
                result = conn.execute(update(t).where(t.c.key == key).values(**values))
                if result.rowcount:
                    return
            try:
                with self.engine.begin() as conn:
                    conn.execute(insert(t).values(key=key, **values))
                return
            except IntegrityError:
                # Concurrent insert won; overwrite it on the next pass
                continue
        raise StateStoreContentionError(f"Could not set state key {key}")

    def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        t = self._table
        now = self._now()
        try:
            with self.engine.begin() as conn:
                # An expired row still occupies the primary key
                conn.execute(
                    delete(t).where(
                        t.c.key == key,
                        t.c.expires_at.is_not(None),
                        t.c.expires_at <= now,
                    )
                )
                conn.execute(
                    insert(t).values(
                        key=key, value=value, expires_at=self._deadline(ttl), updated_at=now
                    )
                )
            return True
        except IntegrityError:
            return False

    def compare_and_set(
        self, key: str, expected: Optional[str], new: str, ttl: Optional[float] = None
    ) -> bool:
        if expected is None:
            return self.set_if_absent(key, new, ttl)

        t = self._table
        now = self._now()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(t)
                .where(t.c.key == key, t.c.value == expected, self._is_live(now))
                .values(value=new, expires_at=self._deadline(ttl), updated_at=now)
            )
            return result.rowcount == 1

    def incr(self, key: str) -> int:
        t = self._table
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self.get(key)
            if current is None:
                if self.set_if_absent(key, "1"):
                    return 1
                continue

            value = int(current) + 1
            now = self._now()
            with self.engine.begin() as conn:
                won = conn.execute(
                    update(t)
                    .where(t.c.key == key, t.c.value == current, self._is_live(now))
                    .values(value=str(value), updated_at=now)
                ).rowcount == 1
            if won:
                return value

        raise StateStoreContentionError(f"Could not increment state key {key}")

    def delete(self, key: str) -> None:
        t = self._table
        with self.engine.begin() as conn:
            conn.execute(delete(t).where(t.c.key == key))

    def ttl(self, key: str) -> Optional[float]:
        t = self._table
        now = self._now()
        with self.engine.connect() as conn:
            row = conn.execute(
                select(t.c.expires_at).where(t.c.key == key, self._is_live(now))
            ).first()
        if row is None or row.expires_at is None:
            return None
        return (as_utc(row.expires_at) - now).total_seconds()

    def purge_expired(self) -> int:
        """Delete rows whose TTL has lapsed. Returns the number removed."""
        t = self._table
        with self.engine.begin() as conn:
            removed = conn.execute(
                delete(t).where(t.c.expires_at.is_not(None), t.c.expires_at <= self._now())
            ).rowcount
        if removed:
            logger.info(f"Purged {removed} expired state entries")
        return removed


_store: Optional[StateStore] = None
_store_lock = Lock()


def get_state_store() -> StateStore:
    """Process-wide store for the configured STATE_BACKEND."""
    global _store
    with _store_lock:
        if _store is None:
            if settings.STATE_BACKEND == "memory":
                _store = InMemoryStateStore()
            else:
                from taskhook.db import engine

                _store = DatabaseStateStore(engine)
            logger.info(f"State store backend: {type(_store).__name__}")
        return _store
