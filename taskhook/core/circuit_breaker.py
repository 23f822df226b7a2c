import json
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

from taskhook.core.exceptions import CircuitOpenError
from taskhook.core.state_store import (
    MAX_CAS_ATTEMPTS,
    StateStore,
    StateStoreContentionError,
    get_state_store,
)

logger = logging.getLogger(__name__)

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)

# Global notification callback - set by application on startup
_notification_callback: Optional[StateChangeCallback] = None


def set_notification_callback(callback: Optional[StateChangeCallback]) -> None:
    """Set the global notification callback for circuit breaker state changes."""
    global _notification_callback
    _notification_callback = callback


def _notify_state_change(name: str, old_state: str, new_state: str) -> None:
    """Notify about state change if callback is registered."""
    if _notification_callback:
        try:
            _notification_callback(name, old_state, new_state)
        except Exception as e:
            logger.error(f"Circuit breaker notification failed: {e}")


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass(frozen=True)
class BreakerSnapshot:
    """Breaker state as persisted in the shared store (one JSON value per service)."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None  # epoch seconds

    def to_json(self) -> str:
        return json.dumps(
            {
                "state": self.state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "last_failure_time": self.last_failure_time,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "BreakerSnapshot":
        """Absent or unreadable state means a fresh CLOSED breaker."""
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
            return cls(
                state=CircuitState(data.get("state", "closed")),
                failure_count=int(data.get("failure_count", 0)),
                success_count=int(data.get("success_count", 0)),
                last_failure_time=data.get("last_failure_time"),
            )
        except (ValueError, TypeError, AttributeError):
            logger.warning(f"Discarding unreadable circuit breaker state: {raw!r}")
            return cls()


class CallOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"  # Operation ran and raised
    REJECTED = "rejected"  # Circuit open, operation never invoked


@dataclass(frozen=True)
class OperationResult:
    """
    Tagged result of `CircuitBreaker.call`.

    Callers branch on `outcome` to tell "downstream known to be down, skip"
    (REJECTED) apart from "this attempt failed" (FAILURE).
    """

    service_name: str
    outcome: CallOutcome
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.outcome is CallOutcome.SUCCESS

    @property
    def rejected(self) -> bool:
        return self.outcome is CallOutcome.REJECTED

    def unwrap(self) -> Any:
        """Return the value, or raise the operation's error / CircuitOpenError."""
        if self.outcome is CallOutcome.REJECTED:
            raise CircuitOpenError(self.service_name)
        if self.outcome is CallOutcome.FAILURE and self.error is not None:
            raise self.error
        return self.value


@dataclass
class CircuitBreaker:
    """
    Three-state breaker whose state lives in a shared StateStore.

    Every transition is a compare-and-set on the stored snapshot, so several
    process instances guarding the same downstream observe (and update) one
    breaker. The snapshot carries a TTL: a breaker nobody touches for
    `state_ttl` seconds comes back CLOSED.
    """

    name: str
    store: StateStore = field(default_factory=get_state_store)
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 60.0  # seconds in OPEN before a trial call is allowed
    state_ttl: float = 3600.0
    clock: Callable[[], float] = time.time

    @property
    def key(self) -> str:
        return f"circuit_breaker:{self.name}"

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot.from_json(self.store.get(self.key))

    @property
    def state(self) -> CircuitState:
        """Return stored state. Use allow_request() for state transitions."""
        return self.snapshot().state

    def _update(self, transition: Callable[[BreakerSnapshot], BreakerSnapshot]) -> BreakerSnapshot:
        """Apply a transition with optimistic concurrency against the store."""
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = self.store.get(self.key)
            current = BreakerSnapshot.from_json(raw)
            new = transition(current)
            if new == current:
                return current
            if self.store.compare_and_set(self.key, raw, new.to_json(), ttl=self.state_ttl):
                if new.state != current.state:
                    self._log_transition(current, new)
                    _notify_state_change(self.name, current.state.value, new.state.value)
                return new
        raise StateStoreContentionError(f"Circuit {self.name}: state update kept conflicting")

    def _log_transition(self, old: BreakerSnapshot, new: BreakerSnapshot) -> None:
        label = f"Circuit {self.name}: {old.state.name} -> {new.state.name}"
        if new.state == CircuitState.OPEN:
            if old.state == CircuitState.HALF_OPEN:
                logger.warning(f"{label} (failure during recovery)")
            else:
                logger.warning(f"{label} (threshold reached, failures={new.failure_count})")
        else:
            logger.info(label)

    def allow_request(self) -> bool:
        now = self.clock()

        def transition(snap: BreakerSnapshot) -> BreakerSnapshot:
            if snap.state != CircuitState.OPEN:
                return snap
            if snap.last_failure_time is not None and now - snap.last_failure_time < self.timeout:
                return snap
            return replace(snap, state=CircuitState.HALF_OPEN, success_count=0)

        return self._update(transition).state != CircuitState.OPEN

    def record_success(self) -> None:
        def transition(snap: BreakerSnapshot) -> BreakerSnapshot:
            if snap.state == CircuitState.HALF_OPEN:
                successes = snap.success_count + 1
                if successes >= self.success_threshold:
                    return BreakerSnapshot(state=CircuitState.CLOSED)
                return replace(snap, success_count=successes)
            if snap.state == CircuitState.CLOSED and snap.failure_count:
                return replace(snap, failure_count=0)
            return snap

        self._update(transition)

    def record_failure(self) -> None:
        now = self.clock()

        def transition(snap: BreakerSnapshot) -> BreakerSnapshot:
            failures = snap.failure_count + 1
            if snap.state == CircuitState.HALF_OPEN or (
                snap.state == CircuitState.CLOSED and failures >= self.failure_threshold
            ):
                return BreakerSnapshot(
                    state=CircuitState.OPEN,
                    failure_count=failures,
                    success_count=0,
                    last_failure_time=now,
                )
            return replace(snap, failure_count=failures)

        self._update(transition)

    def call(self, operation: Callable[[], Any]) -> OperationResult:
        """
        Run a zero-argument operation under breaker protection.

        The operation's exception is recorded and returned in the result
        (never raised here); an open breaker returns REJECTED without
        invoking the operation.
        """
        if not self.allow_request():
            logger.warning(f"Circuit {self.name}: OPEN, rejecting call")
            return OperationResult(service_name=self.name, outcome=CallOutcome.REJECTED)

        try:
            value = operation()
        except Exception as exc:
            self.record_failure()
            return OperationResult(service_name=self.name, outcome=CallOutcome.FAILURE, error=exc)

        self.record_success()
        return OperationResult(service_name=self.name, outcome=CallOutcome.SUCCESS, value=value)

    def status(self) -> Dict[str, Any]:
        snap = self.snapshot()
        return {
            "service": self.name,
            "state": snap.state.value,
            "failures": snap.failure_count,
            "successes": snap.success_count,
            "last_failure": snap.last_failure_time,
        }

    def reset(self) -> None:
        """Force the breaker CLOSED with all counters cleared."""
        old = self.snapshot()
        self.store.set(self.key, BreakerSnapshot().to_json(), ttl=self.state_ttl)
        logger.info(f"Circuit {self.name}: reset to CLOSED")
        if old.state != CircuitState.CLOSED:
            _notify_state_change(self.name, old.state.value, CircuitState.CLOSED.value)


class CircuitBreakerRegistry:
    _breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def get(cls, name: str, **kwargs) -> CircuitBreaker:
        if name not in cls._breakers:
            cls._breakers[name] = CircuitBreaker(name=name, **kwargs)
        return cls._breakers[name]

    @classmethod
    def get_all_states(cls) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in cls._breakers.items()}

    @classmethod
    def get_all_statuses(cls) -> Dict[str, Dict[str, Any]]:
        return {name: cb.status() for name, cb in cls._breakers.items()}

    @classmethod
    def clear(cls) -> None:
        cls._breakers.clear()
