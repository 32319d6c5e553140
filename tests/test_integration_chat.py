"""Integration tests for the HTTP chat flow.

Covers:
- Streaming and buffered chat responses
- Usage reporting and the daily cap
- Conversation, message and pin management
- Checkpoint history
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from conftest import tool_call
from parley import app as app_module
from parley.service.quota import SHARED
from parley.service.runtime import get_runtime


@pytest.fixture
def client():
    """Test client with lifespan, so background summaries share one event loop."""
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client):
    """Create a test user and return auth headers."""
    unique_email = f"chattest_{uuid.uuid4().hex[:8]}@example.com"
    response = client.post(
        "/v1/auth/signup",
        json={"email": unique_email, "password": "TestPassword123!"},
    )
    assert response.status_code == 201, f"Signup failed: {response.text}"
    access_token = response.json()["data"]["access_token"]
    return {"Authorization": f"Bearer {access_token}"}


def _user_id(client, headers):
    return client.get("/v1/me", headers=headers).json()["data"]["id"]


class TestStreamingChat:
    """Default text/plain streaming mode."""

    def test_stream_body_and_headers(self, client, auth_headers, script_model):
        script_model(["Recursion is ", "a function calling itself."])

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "Explain recursion"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Recursion is a function calling itself."
        assert response.headers["X-Conversation-Id"]
        assert response.headers["X-User-Message-Id"]
        assert response.headers["X-Assistant-Message-Id"]
        assert response.headers["X-Usage-Limit"] == "20"
        assert response.headers["X-Usage-Remaining"] == "19"

    def test_follow_up_with_camel_case_id(self, client, auth_headers, script_model):
        script_model(["First."], ["Second."])
        first = client.post("/v1/chat", headers=auth_headers, json={"message": "one"})
        conversation_id = first.headers["X-Conversation-Id"]

        second = client.post(
            "/v1/chat",
            headers=auth_headers,
            json={"message": "two", "conversationId": conversation_id},
        )

        assert second.headers["X-Conversation-Id"] == conversation_id
        messages = client.get(
            f"/v1/conversations/{conversation_id}/messages", headers=auth_headers
        ).json()["data"]["items"]
        assert [m["content"] for m in messages] == ["one", "First.", "two", "Second."]

    def test_mid_stream_failure_is_reported_in_band(self, client, auth_headers, script_model):
        script_model(["Hello", ", I ca", RuntimeError("socket closed")])

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "Explain recursion"})

        assert response.status_code == 200
        assert response.text.startswith("Hello, I ca")
        assert "[Response interrupted: model run failed]" in response.text
        conversation_id = response.headers["X-Conversation-Id"]
        messages = client.get(
            f"/v1/conversations/{conversation_id}/messages", headers=auth_headers
        ).json()["data"]["items"]
        assert messages[-1]["content"] == "Hello, I ca"
        usage = client.get("/v1/usage", headers=auth_headers).json()["data"]
        assert usage["used_total"] == 0

    def test_failure_before_output_returns_envelope(self, client, auth_headers, script_model):
        script_model([RuntimeError("upstream down")])

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "hello"})

        assert response.status_code == 502
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "server_error"

    def test_tool_call_round(self, client, auth_headers, script_model):
        script_model([tool_call("set_user_profile", "Likes short answers.")], ["Noted."])

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "Remember I like short answers"})

        assert response.text == "Noted."
        user = get_runtime().store.get_user(_user_id(client, auth_headers))
        assert user.profile_summary == "Likes short answers."


class TestBufferedChat:
    def test_non_stream_envelope(self, client, auth_headers, script_model):
        script_model(["Paris."])

        response = client.post(
            "/v1/chat", headers=auth_headers, json={"message": "Capital of France?", "stream": False}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["content"] == "Paris."
        assert data["partial"] is False
        assert data["usage"] == {"limit": 20, "remaining": 19, "used_total": 1}

    def test_blank_message_rejected(self, client, auth_headers, script_model):
        script_model()
        response = client.post("/v1/chat", headers=auth_headers, json={"message": "   ", "stream": False})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Message is required"


class TestUsage:
    def test_usage_counts_completed_runs(self, client, auth_headers, script_model):
        script_model(["a"], ["b"])
        client.post("/v1/chat", headers=auth_headers, json={"message": "one"})
        client.post("/v1/chat", headers=auth_headers, json={"message": "two"})

        data = client.get("/v1/usage", headers=auth_headers).json()["data"]

        assert data["used_total"] == 2
        assert data["used_shared"] == 2
        assert data["limit"] == 20
        assert data["remaining"] == 18

    def test_cap_returns_429(self, client, auth_headers, script_model):
        script_model(["never"])
        runtime = get_runtime()
        user_id = _user_id(client, auth_headers)
        runtime.store.update_user_quota(user_id, daily_limit=2)
        for _ in range(2):
            runtime.quota.increment_and_get_total(user_id, SHARED)

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "one more"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert client.get("/v1/conversations", headers=auth_headers).json()["data"]["items"] == []

    def test_personal_key_lifts_the_cap(self, client, auth_headers, script_model):
        script_model(["ok"])
        put = client.put("/v1/me/model-key", headers=auth_headers, json={"api_key": "sk-personal-abc"})
        assert put.status_code == 200
        assert put.json()["data"]["has_personal_key"] is True

        response = client.post("/v1/chat", headers=auth_headers, json={"message": "hi"})
        assert "X-Usage-Limit" not in response.headers

        usage = client.get("/v1/usage", headers=auth_headers).json()["data"]
        assert usage["limit"] is None
        assert usage["used_personal"] == 1

        client.delete("/v1/me/model-key", headers=auth_headers)
        assert client.get("/v1/usage", headers=auth_headers).json()["data"]["limit"] == 20


class TestConversations:
    def _start(self, client, headers, message="Test message"):
        response = client.post("/v1/chat", headers=headers, json={"message": message})
        return response.headers["X-Conversation-Id"], response.headers["X-Assistant-Message-Id"]

    def test_list_and_get(self, client, auth_headers, script_model):
        script_model(["ok"])
        conversation_id, _ = self._start(client, auth_headers)

        listed = client.get("/v1/conversations", headers=auth_headers).json()["data"]["items"]
        assert [c["id"] for c in listed] == [conversation_id]
        single = client.get(f"/v1/conversations/{conversation_id}", headers=auth_headers)
        assert single.json()["data"]["title"] == "Test message"

    def test_rename(self, client, auth_headers, script_model):
        script_model(["ok"])
        conversation_id, _ = self._start(client, auth_headers)

        response = client.patch(
            f"/v1/conversations/{conversation_id}", headers=auth_headers, json={"title": "Renamed"}
        )
        assert response.json()["data"]["title"] == "Renamed"
        empty = client.patch(
            f"/v1/conversations/{conversation_id}", headers=auth_headers, json={"title": "  "}
        )
        assert empty.status_code == 400

    def test_other_users_cannot_see_conversation(self, client, auth_headers, script_model):
        script_model(["ok"], ["never"])
        conversation_id, _ = self._start(client, auth_headers)
        other = client.post(
            "/v1/auth/signup", json={"email": "other_user@example.com", "password": "TestPassword123!"}
        ).json()["data"]["access_token"]
        other_headers = {"Authorization": f"Bearer {other}"}

        assert client.get(f"/v1/conversations/{conversation_id}", headers=other_headers).status_code == 404
        chat = client.post(
            "/v1/chat",
            headers=other_headers,
            json={"message": "hijack", "conversation_id": conversation_id},
        )
        assert chat.status_code == 404
        assert client.delete(f"/v1/conversations/{conversation_id}", headers=other_headers).status_code == 404

    def test_checkpoints_listed_newest_first(self, client, auth_headers, script_model):
        script_model(["ok"])
        conversation_id, _ = self._start(client, auth_headers)

        items = client.get(
            f"/v1/conversations/{conversation_id}/checkpoints", headers=auth_headers
        ).json()["data"]["items"]

        assert [i["metadata"]["source"] for i in items] == ["loop", "input"]
        assert items[0]["config"]["configurable"]["thread_id"] == conversation_id

    def test_pins_and_delete(self, client, auth_headers, script_model):
        script_model(["ok"])
        conversation_id, assistant_id = self._start(client, auth_headers)

        for _ in range(2):
            pin = client.post("/v1/pins", headers=auth_headers, json={"messageId": assistant_id})
            assert pin.json()["data"]["pinned"] is True
        pins = client.get("/v1/pins", headers=auth_headers).json()["data"]["items"]
        assert [p["message_id"] for p in pins] == [assistant_id]

        deleted = client.delete(f"/v1/conversations/{conversation_id}", headers=auth_headers)
        assert deleted.json()["data"]["deleted"] is True
        assert client.get("/v1/pins", headers=auth_headers).json()["data"]["items"] == []
        assert client.get(f"/v1/conversations/{conversation_id}", headers=auth_headers).status_code == 404

    def test_delete_message(self, client, auth_headers, script_model):
        script_model(["ok"])
        conversation_id, assistant_id = self._start(client, auth_headers)

        assert client.delete(f"/v1/messages/{assistant_id}", headers=auth_headers).status_code == 200
        messages = client.get(
            f"/v1/conversations/{conversation_id}/messages", headers=auth_headers
        ).json()["data"]["items"]
        assert [m["role"] for m in messages] == ["user"]

    def test_cancel_without_active_run(self, client, auth_headers, script_model):
        script_model(["ok"])
        conversation_id, _ = self._start(client, auth_headers)

        response = client.post(
            "/v1/chat/cancel", headers=auth_headers, json={"conversationId": conversation_id}
        )
        assert response.json()["data"] == {"conversation_id": conversation_id, "cancelled": False}


class TestAuthEndpoints:
    def test_requires_bearer_token(self, client):
        response = client.get("/v1/conversations")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_login(self, client):
        client.post("/v1/auth/signup", json={"email": "login@example.com", "password": "TestPassword123!"})
        good = client.post("/v1/auth/login", json={"email": "login@example.com", "password": "TestPassword123!"})
        bad = client.post("/v1/auth/login", json={"email": "login@example.com", "password": "nope-nope"})
        assert good.status_code == 200
        assert good.json()["data"]["access_token"]
        assert bad.status_code == 401

    def test_duplicate_signup_conflicts(self, client):
        body = {"email": "twice@example.com", "password": "TestPassword123!"}
        assert client.post("/v1/auth/signup", json=body).status_code == 201
        assert client.post("/v1/auth/signup", json=body).status_code == 409

    def test_healthz(self, client):
        data = client.get("/healthz").json()
        assert data["status"] == "healthy"
        assert data["checks"]["redis"]["status"] == "not_configured"
