"""HTTP-level tests through the FastAPI app."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from taskflow import app as app_module


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _signup(client, email="alice@example.com", password="correct horse") -> dict:
    response = client.post("/v1/auth/signup", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _headers(grant: dict) -> dict:
    return {"Authorization": f"Bearer {grant['access_token']}"}


class TestHealthAndHeaders:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_request_id_round_trip(self, client):
        response = client.get("/v1/tasks", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestAuthRoutes:
    def test_signup_and_login(self, client):
        grant = _signup(client)
        assert grant["token_type"] == "bearer"
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "correct horse"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["user_id"] == grant["user_id"]

    def test_duplicate_signup_conflicts(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/signup", json={"email": "alice@example.com", "password": "another pass"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_bad_login(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "wrong password"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid email or password"


class TestTaskRoutes:
    def test_requires_login(self, client):
        response = client.post("/v1/tasks", json={"title": "Anonymous"})
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "You must be logged in to perform this action"

    def test_garbage_token_is_anonymous(self, client):
        response = client.get("/v1/tasks", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_non_ascii_signature_is_anonymous(self, client):
        token = _signup(client)["access_token"]
        header, payload, _ = token.split(".")
        raw = f"Bearer {header}.{payload}.".encode("ascii") + b"\xe9\xe9"
        response = client.get("/v1/tasks", headers={"Authorization": raw})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_task_lifecycle(self, client):
        headers = _headers(_signup(client))
        due = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
        created = client.post(
            "/v1/tasks",
            json={"title": "Write report", "priority": "high", "due_date": due},
            headers=headers,
        )
        assert created.status_code == 201
        task_id = created.json()["data"]["id"]

        fetched = client.get(f"/v1/tasks/{task_id}", headers=headers).json()["data"]
        assert fetched["title"] == "Write report"
        assert fetched["priority"] == "high"
        assert fetched["completed"] is False

        patched = client.patch(
            f"/v1/tasks/{task_id}", json={"description": "Q3", "priority": None}, headers=headers
        )
        assert patched.status_code == 200
        assert patched.json()["data"]["description"] == "Q3"
        assert patched.json()["data"]["priority"] is None

        toggled = client.post(f"/v1/tasks/{task_id}/toggle", headers=headers)
        assert toggled.json()["data"] == {"id": task_id, "completed": True}

        stats = client.get("/v1/tasks/stats", headers=headers).json()["data"]
        assert stats == {"total": 1, "completed": 1, "pending": 0, "completion_rate": 100}

        done = client.get("/v1/tasks", params={"completed": True}, headers=headers).json()
        assert [t["id"] for t in done["data"]["items"]] == [task_id]
        upcoming = client.get("/v1/tasks/upcoming", headers=headers).json()["data"]["items"]
        assert [t["id"] for t in upcoming] == [task_id]

        deleted = client.delete(f"/v1/tasks/{task_id}", headers=headers)
        assert deleted.json()["data"]["deleted"] is True
        assert client.get(f"/v1/tasks/{task_id}", headers=headers).status_code == 404

    def test_past_due_date_rejected(self, client):
        headers = _headers(_signup(client))
        response = client.post(
            "/v1/tasks", json={"title": "Late", "due_date": "2001-01-01T00:00:00Z"}, headers=headers
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "Due date must be in the future"
        assert error["details"] == {"field": "due_date"}
        listed = client.get("/v1/tasks", headers=headers).json()["data"]["items"]
        assert listed == []

    def test_missing_title_is_validation_error(self, client):
        headers = _headers(_signup(client))
        response = client.post("/v1/tasks", json={}, headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_patch_field_rejected(self, client):
        headers = _headers(_signup(client))
        task_id = client.post("/v1/tasks", json={"title": "Mine"}, headers=headers).json()["data"]["id"]
        response = client.patch(f"/v1/tasks/{task_id}", json={"owner_id": "x"}, headers=headers)
        assert response.status_code == 400

    def test_other_users_task_is_forbidden(self, client):
        alice = _headers(_signup(client))
        bob = _headers(_signup(client, email="bob@example.com"))
        task_id = client.post("/v1/tasks", json={"title": "Mine"}, headers=alice).json()["data"]["id"]
        response = client.patch(f"/v1/tasks/{task_id}", json={"title": "Ours"}, headers=bob)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "You are not authorized to perform this action"
        assert client.get(f"/v1/tasks/{task_id}", headers=alice).json()["data"]["title"] == "Mine"

    def test_rate_limit_returns_429_with_retry_after(self, client):
        headers = _headers(_signup(client))
        for i in range(5):
            assert client.post("/v1/tasks", json={"title": f"T{i}"}, headers=headers).status_code == 201
        response = client.post("/v1/tasks", json={"title": "One too many"}, headers=headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "2"
        assert response.json()["error"]["code"] == "rate_limited"


class TestThreadRoutes:
    def test_thread_and_message_flow(self, client):
        headers = _headers(_signup(client))
        thread_id = client.post("/v1/threads", json={"title": "Chat"}, headers=headers).json()["data"]["id"]
        sent = client.post(
            f"/v1/threads/{thread_id}/messages", json={"content": "hello"}, headers=headers
        )
        assert sent.status_code == 201
        message_id = sent.json()["data"]["id"]
        client.post(
            f"/v1/threads/{thread_id}/messages",
            json={"content": "hi!", "role": "assistant"},
            headers=headers,
        )

        listed = client.get(f"/v1/threads/{thread_id}/messages", headers=headers).json()["data"]
        assert [m["content"] for m in listed["items"]] == ["hello", "hi!"]

        archived = client.post(f"/v1/threads/{thread_id}/archive", headers=headers).json()["data"]
        assert archived["status"] == "archived"
        only_archived = client.get("/v1/threads", params={"status": "archived"}, headers=headers)
        assert [t["id"] for t in only_archived.json()["data"]["items"]] == [thread_id]

        assert client.delete(f"/v1/messages/{message_id}", headers=headers).status_code == 200
        removed = client.delete(f"/v1/threads/{thread_id}", headers=headers).json()["data"]
        assert removed["messages_deleted"] == 1
        assert client.get(f"/v1/threads/{thread_id}", headers=headers).status_code == 404

    def test_invalid_role_rejected(self, client):
        headers = _headers(_signup(client))
        thread_id = client.post("/v1/threads", json={}, headers=headers).json()["data"]["id"]
        response = client.post(
            f"/v1/threads/{thread_id}/messages",
            json={"content": "hi", "role": "system"},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "role"}


class TestDashboardRoutes:
    def test_dashboard(self, client):
        headers = _headers(_signup(client))
        client.post("/v1/tasks", json={"title": "One"}, headers=headers)
        client.post("/v1/threads", json={"title": "Chat"}, headers=headers)

        summary = client.get("/v1/dashboard/summary", headers=headers).json()["data"]
        assert summary["per_table"] == {"tasks": 1, "threads": 1, "messages": 0}
        assert summary["total_records"] == 2

        recent = client.get("/v1/dashboard/recent", headers=headers).json()["data"]["items"]
        assert [(r["name"], r["status"]) for r in recent] == [("One", "pending")]

        productivity = client.get("/v1/dashboard/productivity", headers=headers).json()["data"]
        assert productivity["today"] == {"created": 1, "completed": 0}
        assert productivity["overdue"] == 0

    def test_bad_limit(self, client):
        headers = _headers(_signup(client))
        response = client.get("/v1/dashboard/recent", params={"limit": 0}, headers=headers)
        assert response.status_code == 400
