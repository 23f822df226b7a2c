"""
Tests for the notification service HTTP API.

Tests cover:
1. POST /notify - 201 on first delivery, 200 on duplicates, 401/400 errors
2. Inbox endpoints - listing, pagination, read, delete, ownership
"""

import json

import pytest
from fastapi.testclient import TestClient

from taskhook.core.config import settings
from taskhook.core.signature import canonical_json, sign

WEBHOOK_SECRET = settings.WEBHOOK_SECRET


def webhook_body(user_id: int = 7, task_id: int = 42, timestamp: str = "2024-01-15T10:30:00Z") -> dict:
    return {
        "userId": user_id,
        "taskId": task_id,
        "message": f"Task '{task_id}' has been completed!",
        "timestamp": timestamp,
    }


def post_webhook(client: TestClient, body: dict, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    signature = sign(WEBHOOK_SECRET, body) if signature is None else signature
    if signature:
        headers["X-Signature"] = signature
    return client.post("/notify", content=canonical_json(body), headers=headers)


@pytest.fixture
def seeded(notify_client: TestClient):
    """Three notifications for user 7 (ids 1..3) and one for user 8 (id 4)."""
    for task_id in (1, 2, 3):
        post_webhook(notify_client, webhook_body(task_id=task_id))
    post_webhook(notify_client, webhook_body(user_id=8, task_id=9))
    return notify_client


class TestNotify:
    def test_first_delivery_created(self, notify_client: TestClient):
        response = post_webhook(notify_client, webhook_body())

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["notification_id"] == 1
        assert data["message"] == "Notification received successfully"

    def test_duplicate_delivery_returns_same_id(self, notify_client: TestClient):
        first = post_webhook(notify_client, webhook_body())
        second = post_webhook(notify_client, webhook_body())

        assert second.status_code == 200
        assert second.json()["data"]["notification_id"] == first.json()["data"]["notification_id"]

    def test_key_order_on_the_wire_does_not_matter(self, notify_client: TestClient):
        body = webhook_body()
        reordered = json.dumps(dict(reversed(list(body.items()))))

        response = notify_client.post(
            "/notify",
            content=reordered,
            headers={"Content-Type": "application/json", "X-Signature": sign(WEBHOOK_SECRET, body)},
        )

        assert response.status_code == 201

    def test_missing_signature(self, notify_client: TestClient):
        response = post_webhook(notify_client, webhook_body(), signature="")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"

    def test_bad_signature(self, notify_client: TestClient):
        response = post_webhook(notify_client, webhook_body(), signature="sha256=" + "0" * 64)

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid webhook signature"

    def test_tampered_body(self, notify_client: TestClient):
        signature = sign(WEBHOOK_SECRET, webhook_body())
        response = post_webhook(notify_client, webhook_body(task_id=43), signature=signature)
        assert response.status_code == 401

    def test_malformed_payload(self, notify_client: TestClient):
        body = {**webhook_body(), "timestamp": "not-a-date"}

        response = post_webhook(notify_client, body)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_PAYLOAD"
        assert error["details"][0]["field"] == "timestamp"

    def test_invalid_json(self, notify_client: TestClient):
        response = notify_client.post(
            "/notify",
            content="{not json",
            headers={"Content-Type": "application/json", "X-Signature": "sha256=abc"},
        )
        assert response.status_code == 400


class TestListNotifications:
    def test_requires_authentication(self, notify_client: TestClient):
        assert notify_client.get("/notifications").status_code == 401

    def test_lists_own_newest_first(self, seeded: TestClient, auth_headers):
        response = seeded.get("/notifications", headers=auth_headers(7))

        assert response.status_code == 200
        body = response.json()
        assert [n["taskId"] for n in body["data"]] == [3, 2, 1]
        assert body["meta"] == {"page": 1, "limit": 10, "total": 3, "pages": 1}
        assert body["data"][0]["status"] == "unread"
        assert body["data"][0]["userId"] == 7

    def test_pagination(self, notify_client: TestClient, auth_headers):
        for task_id in range(1, 26):
            post_webhook(notify_client, webhook_body(task_id=task_id))

        pages = [
            notify_client.get(f"/notifications?page={p}&limit=10", headers=auth_headers(7)).json()
            for p in (1, 2, 3)
        ]

        assert [len(p["data"]) for p in pages] == [10, 10, 5]
        assert pages[0]["meta"]["pages"] == 3
        assert pages[0]["meta"]["total"] == 25

    def test_limit_out_of_range(self, notify_client: TestClient, auth_headers):
        response = notify_client.get("/notifications?limit=101", headers=auth_headers(7))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_status_filter(self, seeded: TestClient, auth_headers):
        seeded.patch("/notifications/1/read", headers=auth_headers(7))

        response = seeded.get("/notifications?status=read", headers=auth_headers(7))

        assert [n["id"] for n in response.json()["data"]] == [1]


class TestSingleNotification:
    def test_get_own(self, seeded: TestClient, auth_headers):
        response = seeded.get("/notifications/1", headers=auth_headers(7))

        assert response.status_code == 200
        assert response.json()["data"]["id"] == 1

    def test_get_other_users(self, seeded: TestClient, auth_headers):
        response = seeded.get("/notifications/4", headers=auth_headers(7))
        assert response.status_code == 403

    def test_get_unknown(self, seeded: TestClient, auth_headers):
        response = seeded.get("/notifications/999", headers=auth_headers(7))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_mark_read(self, seeded: TestClient, auth_headers):
        response = seeded.patch("/notifications/2/read", headers=auth_headers(7))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "read"
        assert data["readAt"] is not None

    def test_mark_read_other_users(self, seeded: TestClient, auth_headers):
        assert seeded.patch("/notifications/4/read", headers=auth_headers(7)).status_code == 403

    def test_delete_one(self, seeded: TestClient, auth_headers):
        response = seeded.delete("/notifications/1", headers=auth_headers(7))

        assert response.status_code == 200
        assert response.json()["data"]["deleted"]["id"] == 1
        assert seeded.get("/notifications/1", headers=auth_headers(7)).status_code == 404

    def test_delete_other_users(self, seeded: TestClient, auth_headers):
        assert seeded.delete("/notifications/4", headers=auth_headers(7)).status_code == 403
        assert seeded.get("/notifications/4", headers=auth_headers(8)).status_code == 200


class TestDeleteAll:
    def test_deletes_only_own(self, seeded: TestClient, auth_headers):
        response = seeded.delete("/notifications", headers=auth_headers(7))

        assert response.status_code == 200
        assert response.json()["data"]["deleted_count"] == 3
        assert seeded.get("/notifications", headers=auth_headers(7)).json()["meta"]["total"] == 0
        assert seeded.get("/notifications", headers=auth_headers(8)).json()["meta"]["total"] == 1


class TestHealth:
    def test_reports_store_backend(self, notify_client: TestClient):
        response = notify_client.get("/health")

        assert response.status_code == 200
        assert response.json()["store"] == "memory"
