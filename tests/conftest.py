"""
Test fixtures for taskhook tests.

Provides an isolated in-memory database, a controllable clock, an in-memory
state store and TestClients for both services.
"""

import os

# Must be set before taskhook.core.config is imported
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STATE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("RUN_DELIVERY_WORKER", "false")

from typing import Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

import taskhook.models  # noqa: E402,F401
from taskhook.api import deps  # noqa: E402
from taskhook.core import state_store as state_store_module  # noqa: E402
from taskhook.core.circuit_breaker import CircuitBreakerRegistry, set_notification_callback  # noqa: E402
from taskhook.core.jwt import create_access_token  # noqa: E402
from taskhook.core.state_store import InMemoryStateStore  # noqa: E402
from taskhook.db import get_session  # noqa: E402
from taskhook.models.task import Task, TaskStatus  # noqa: E402

TEST_DATABASE_URL = "sqlite:///:memory:"


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch):
    """Fresh breaker registry and process state store for every test."""
    CircuitBreakerRegistry.clear()
    set_notification_callback(None)
    monkeypatch.setattr(state_store_module, "_store", InMemoryStateStore())
    yield
    CircuitBreakerRegistry.clear()
    set_notification_callback(None)


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def sample_task(test_session: Session) -> Task:
    task = Task(user_id=7, title="Write report", status=TaskStatus.IN_PROGRESS)
    test_session.add(task)
    test_session.commit()
    test_session.refresh(task)
    return task


@pytest.fixture
def auth_headers():
    """Build a bearer header for a user id."""

    def _headers(user_id: int) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


@pytest.fixture
def task_client(test_session: Session):
    """Task API client with overridden database session."""
    from taskhook.main import app

    def get_test_session():
        yield test_session

    app.dependency_overrides[get_session] = get_test_session
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def notify_client(test_session: Session, memory_store: InMemoryStateStore):
    """Notification service client with overridden session and state store."""
    from taskhook.notify_app import app

    def get_test_session():
        yield test_session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[deps.get_store] = lambda: memory_store
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
