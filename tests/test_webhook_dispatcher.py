"""
Tests for the task-completed webhook dispatcher.

The notification service is replaced with an httpx.MockTransport, so every
request the dispatcher makes is observable.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from taskhook.core.circuit_breaker import CircuitBreaker, CircuitState
from taskhook.core.config import Settings
from taskhook.core.signature import verify
from taskhook.models.task import Task
from taskhook.schemas import WebhookPayload
from taskhook.services.webhook_dispatcher import (
    WEBHOOK_SERVICE_NAME,
    DispatchOutcome,
    WebhookDispatcher,
    build_payload,
    get_webhook_breaker,
)

SECRET = "dispatch-secret"


def make_config(**overrides) -> Settings:
    values = {
        "APP_ENV": "production",
        "WEBHOOK_SECRET": SECRET,
        "WEBHOOK_URL": "http://notify.test/notify",
    }
    values.update(overrides)
    return Settings(**values)


def make_payload() -> WebhookPayload:
    return WebhookPayload(
        userId=7,
        taskId=42,
        message="Task 'Write report' has been completed!",
        timestamp="2024-01-15T10:30:00+00:00",
    )


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def breaker(memory_store, clock) -> CircuitBreaker:
    return CircuitBreaker(name=WEBHOOK_SERVICE_NAME, store=memory_store, failure_threshold=5, clock=clock)


def make_dispatcher(handler, breaker, sleeps=None, **config) -> WebhookDispatcher:
    return WebhookDispatcher(
        config=make_config(**config),
        breaker=breaker,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
    )


class TestBuildPayload:
    def test_payload_fields(self):
        task = Task(id=42, user_id=7, title="Write report")
        now = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

        payload = build_payload(task, now=now)

        assert payload.userId == 7
        assert payload.taskId == 42
        assert payload.message == "Task 'Write report' has been completed!"
        assert payload.timestamp == "2024-01-15T10:30:00+00:00"


class TestSend:
    def test_request_is_signed(self, breaker):
        recorder = Recorder(httpx.Response(201, json={"data": {"notification_id": 1}}))
        dispatcher = make_dispatcher(recorder, breaker)

        result = dispatcher.dispatch(make_payload(), attempt=2)

        assert result.outcome == DispatchOutcome.DELIVERED
        assert result.status_code == 201

        request = recorder.requests[0]
        assert str(request.url) == "http://notify.test/notify"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Webhook-Source"] == "task-management-api"
        assert request.headers["X-Attempt"] == "2"

        body = json.loads(request.content)
        assert body == make_payload().to_wire()
        assert verify(request.headers["X-Signature"], SECRET, body) is True

    def test_duplicate_response_counts_as_delivered(self, breaker):
        dispatcher = make_dispatcher(Recorder(httpx.Response(200, json={})), breaker)
        assert dispatcher.dispatch(make_payload()).outcome == DispatchOutcome.DELIVERED

    def test_connection_error_retried_once(self, breaker):
        recorder = Recorder(httpx.ConnectError("refused"), httpx.Response(201, json={}))
        sleeps: list[float] = []
        dispatcher = make_dispatcher(recorder, breaker, sleeps=sleeps)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.DELIVERED
        assert len(recorder.requests) == 2
        assert sleeps == [0.5]

    def test_persistent_connection_error_fails(self, breaker):
        recorder = Recorder(httpx.ConnectError("refused"))
        dispatcher = make_dispatcher(recorder, breaker)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.FAILED
        assert len(recorder.requests) == 2
        assert "connection failed" in result.error
        assert breaker.snapshot().failure_count == 1

    def test_server_error_after_reconnect_fails_with_status(self, breaker):
        recorder = Recorder(httpx.ConnectError("refused"), httpx.Response(500, text="boom"))
        dispatcher = make_dispatcher(recorder, breaker)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.FAILED
        assert result.status_code == 500
        assert len(recorder.requests) == 2

    def test_connection_error_without_inline_retries(self, breaker):
        recorder = Recorder(httpx.ConnectError("refused"))
        sleeps: list[float] = []
        dispatcher = make_dispatcher(recorder, breaker, sleeps=sleeps, WEBHOOK_CONNECT_RETRIES=0)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.FAILED
        assert len(recorder.requests) == 1
        assert sleeps == []

    def test_server_error_not_retried_inline(self, breaker):
        recorder = Recorder(httpx.Response(503, text="unavailable"))
        dispatcher = make_dispatcher(recorder, breaker)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.FAILED
        assert result.status_code == 503
        assert len(recorder.requests) == 1

    def test_client_error_counts_against_breaker(self, breaker):
        dispatcher = make_dispatcher(Recorder(httpx.Response(401, json={})), breaker)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.FAILED
        assert result.status_code == 401
        assert breaker.snapshot().failure_count == 1

    def test_read_timeout_is_not_retried(self, breaker):
        recorder = Recorder(httpx.ReadTimeout("slow"))
        dispatcher = make_dispatcher(recorder, breaker)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.FAILED
        assert len(recorder.requests) == 1


class TestDispatchOutcomes:
    def test_open_circuit_drops_without_request(self, breaker):
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()
        recorder = Recorder(httpx.Response(201, json={}))
        dispatcher = make_dispatcher(recorder, breaker)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.DROPPED
        assert recorder.requests == []

    def test_failures_open_the_circuit(self, breaker):
        dispatcher = make_dispatcher(Recorder(httpx.Response(500)), breaker)

        outcomes = [dispatcher.dispatch(make_payload()).outcome for _ in range(6)]

        assert outcomes[:5] == [DispatchOutcome.FAILED] * 5
        assert outcomes[5] == DispatchOutcome.DROPPED
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.parametrize("env", ["local", "testing"])
    def test_failure_skipped_outside_production(self, breaker, env):
        dispatcher = make_dispatcher(Recorder(httpx.Response(500)), breaker, APP_ENV=env)

        result = dispatcher.dispatch(make_payload())

        assert result.outcome == DispatchOutcome.SKIPPED
        assert result.status_code == 500

    def test_staging_is_treated_as_production(self, breaker):
        dispatcher = make_dispatcher(Recorder(httpx.Response(500)), breaker, APP_ENV="staging")
        assert dispatcher.dispatch(make_payload()).outcome == DispatchOutcome.FAILED


class TestGetWebhookBreaker:
    def test_uses_configured_thresholds(self, memory_store):
        config = make_config(CIRCUIT_FAILURE_THRESHOLD=3, CIRCUIT_TIMEOUT_SECONDS=30)
        cb = get_webhook_breaker(config)

        assert cb.name == "webhook-notify"
        assert cb.failure_threshold == 3
        assert cb.timeout == 30
        assert get_webhook_breaker(config) is cb
