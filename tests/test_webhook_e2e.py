"""
End-to-end test of the webhook flow across both services.

Task completed (task API) -> delivery queued -> worker dispatches signed
webhook -> notification service stores it -> user reads it from the inbox.
The dispatcher's HTTP client is routed into the notification service's
TestClient instead of the network.
"""

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from taskhook.core.circuit_breaker import CircuitBreaker
from taskhook.models.task import Task
from taskhook.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from taskhook.schemas import WebhookPayload
from taskhook.services.delivery_worker import process_due_deliveries
from taskhook.services.webhook_dispatcher import WEBHOOK_SERVICE_NAME, DispatchOutcome, WebhookDispatcher


@pytest.fixture
def dispatcher(notify_client: TestClient, memory_store, clock) -> WebhookDispatcher:
    def forward(request: httpx.Request) -> httpx.Response:
        response = notify_client.post(
            request.url.path,
            content=request.content,
            headers={k: v for k, v in request.headers.items() if k.lower().startswith(("x-", "content-type"))},
        )
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    return WebhookDispatcher(
        breaker=CircuitBreaker(name=WEBHOOK_SERVICE_NAME, store=memory_store, clock=clock),
        client=httpx.Client(transport=httpx.MockTransport(forward)),
        sleep=lambda _: None,
    )


@pytest.mark.integration
class TestWebhookFlow:
    def test_completion_reaches_inbox(
        self,
        task_client: TestClient,
        notify_client: TestClient,
        test_session: Session,
        sample_task: Task,
        dispatcher: WebhookDispatcher,
        auth_headers,
    ):
        headers = auth_headers(sample_task.user_id)

        response = task_client.post(f"/api/v1/tasks/{sample_task.id}/complete", headers=headers)
        assert response.status_code == 200

        assert process_due_deliveries(test_session, dispatcher=dispatcher) == 1

        delivery = test_session.exec(select(WebhookDelivery)).one()
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.response_status == 201

        inbox = notify_client.get("/notifications", headers=headers).json()
        assert inbox["meta"]["total"] == 1
        notification = inbox["data"][0]
        assert notification["taskId"] == sample_task.id
        assert notification["message"] == "Task 'Write report' has been completed!"

        fetched = notify_client.get(f"/notifications/{notification['id']}", headers=headers)
        assert fetched.status_code == 200
        assert fetched.json()["data"]["status"] == "unread"
        assert fetched.json()["data"]["readAt"] is None

        read = notify_client.patch(f"/notifications/{notification['id']}/read", headers=headers)
        assert read.status_code == 200
        assert read.json()["data"]["status"] == "read"
        assert read.json()["data"]["readAt"] is not None

        refetched = notify_client.get(f"/notifications/{notification['id']}", headers=headers).json()["data"]
        assert refetched["status"] == "read"
        assert refetched["readAt"] is not None

    def test_retry_of_same_delivery_is_deduplicated(
        self,
        task_client: TestClient,
        notify_client: TestClient,
        test_session: Session,
        sample_task: Task,
        dispatcher: WebhookDispatcher,
        auth_headers,
    ):
        task_client.post(f"/api/v1/tasks/{sample_task.id}/complete", headers=auth_headers(sample_task.user_id))
        delivery = test_session.exec(select(WebhookDelivery)).one()
        payload = WebhookPayload.model_validate_json(delivery.payload)

        first = dispatcher.dispatch(payload, attempt=1)
        retry = dispatcher.dispatch(payload, attempt=2)

        assert first.status_code == 201
        assert retry.outcome == DispatchOutcome.DELIVERED
        assert retry.status_code == 200

        inbox = notify_client.get("/notifications", headers=auth_headers(sample_task.user_id)).json()
        assert inbox["meta"]["total"] == 1
