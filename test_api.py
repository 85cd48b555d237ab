"""
Tests for the HTTP surface.

Tests cover:
- Health probes and metrics
- Sending, including chunked payloads
- Conversation retrieval
- Edits, history and their error mapping
- Status updates, read receipts and unread counts
- Caller identity and rate limiting
"""

import json
import logging

import pytest
from fastapi.testclient import TestClient

from chatpipe.logging_utils import CustomJsonFormatter, request_id_ctx
from chatpipe.main import app
from chatpipe.rate_limit import FixedWindowRateLimiter
from chatpipe.storage import Base, engine
from chatpipe.utils import utc_now


ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest.fixture(scope="function")
def client(clock):
    """Create test client with fresh database and a controllable clock for each test."""
    Base.metadata.create_all(bind=engine)
    app.state.clock = clock
    app.state.rate_limiter = FixedWindowRateLimiter(limit=1000, window_seconds=60)

    with TestClient(app) as test_client:
        yield test_client

    app.state.clock = utc_now
    Base.metadata.drop_all(bind=engine)


def send(client, content, headers=ALICE, receiver_id="bob", content_type="text"):
    return client.post(
        "/messages",
        json={"receiver_id": receiver_id, "content": content, "content_type": content_type},
        headers=headers,
    )


class TestHealth:
    """Test health probes."""

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client):
        Base.metadata.drop_all(bind=engine)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"


class TestSendRoute:
    """Test POST /messages."""

    def test_send_message(self, client):
        response = send(client, "Hello Bob")

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "sent"
        assert data["fragments"] == 1
        assert data["group_id"] is None
        assert data["created_at"] == "2025-01-15T10:00:00.000Z"
        assert len(data["message_ids"]) == 1

    def test_send_chunked(self, client):
        response = send(client, "x" * 2500)

        assert response.status_code == 201
        data = response.json()
        assert data["fragments"] == 4
        assert data["group_id"] is not None

    def test_missing_identity(self, client):
        response = client.post("/messages", json={"receiver_id": "bob", "content": "hi"})

        assert response.status_code == 401

    def test_send_to_self(self, client):
        response = send(client, "hi", receiver_id="alice")

        assert response.status_code == 422
        assert response.json()["code"] == "invalid_participant"

    def test_blank_content_rejected(self, client):
        response = send(client, "   ")

        assert response.status_code == 422

    def test_script_only_content_rejected(self, client):
        response = send(client, "<script>alert(1)</script>")

        assert response.status_code == 422
        assert response.json()["code"] == "empty_content"

    def test_unknown_content_type_rejected(self, client):
        response = send(client, "hi", content_type="video")

        assert response.status_code == 422

    def test_rate_limited(self, client):
        app.state.rate_limiter = FixedWindowRateLimiter(limit=1, window_seconds=60)

        assert send(client, "one").status_code == 201
        response = send(client, "two")

        assert response.status_code == 429
        assert response.json()["code"] == "rate_limited"
        assert int(response.headers["retry-after"]) >= 1

    def test_request_id_header(self, client):
        response = send(client, "hi")

        assert "x-request-id" in response.headers


class TestConversationRoute:
    """Test GET /conversations/{other_id}."""

    def test_empty(self, client):
        response = client.get("/conversations/bob", headers=ALICE)

        assert response.status_code == 200
        data = response.json()
        assert data["data"] == []
        assert data["count"] == 0
        assert data["limit"] == 100

    def test_both_sides_see_the_same_conversation(self, client, clock):
        send(client, "hi bob")
        clock.advance(seconds=1)
        send(client, "hi alice", headers=BOB, receiver_id="alice")

        for headers, other in ((ALICE, "bob"), (BOB, "alice")):
            data = client.get(f"/conversations/{other}", headers=headers).json()
            assert [m["content"] for m in data["data"]] == ["hi bob", "hi alice"]

    def test_chunked_message_is_reassembled(self, client):
        text = "".join(chr(ord("a") + i % 26) for i in range(2500))
        message_ids = send(client, text).json()["message_ids"]

        data = client.get("/conversations/bob", headers=ALICE).json()

        assert data["count"] == 1
        assert data["data"][0]["content"] == text
        assert data["data"][0]["id"] == message_ids[0]
        assert data["data"][0]["chunk_info"] is None

    def test_limit(self, client, clock):
        for i in range(3):
            send(client, f"m{i}")
            clock.advance(seconds=1)

        data = client.get("/conversations/bob", params={"limit": 2}, headers=ALICE).json()

        assert [m["content"] for m in data["data"]] == ["m1", "m2"]
        assert data["limit"] == 2

    def test_invalid_limit(self, client):
        response = client.get("/conversations/bob", params={"limit": 0}, headers=ALICE)

        assert response.status_code == 422


class TestEditRoutes:
    """Test PATCH /messages/{id} and edit history."""

    def test_edit(self, client, clock):
        message_id = send(client, "helo").json()["message_ids"][0]
        clock.advance(seconds=20)

        response = client.patch(f"/messages/{message_id}", json={"content": "hello"}, headers=ALICE)

        assert response.status_code == 200
        data = response.json()
        assert data["content"] == "hello"
        assert data["is_edited"] is True
        assert data["edited_at"] == "2025-01-15T10:00:20.000Z"
        assert data["edit_history"] == [{"content": "helo", "edited_at": "2025-01-15T10:00:00.000Z"}]

    def test_edit_visible_in_conversation(self, client):
        message_id = send(client, "v1").json()["message_ids"][0]
        client.patch(f"/messages/{message_id}", json={"content": "v2"}, headers=ALICE)

        data = client.get("/conversations/alice", headers=BOB).json()

        assert data["data"][0]["content"] == "v2"
        assert [h["content"] for h in data["data"][0]["edit_history"]] == ["v1"]

    def test_edit_by_other_user(self, client):
        message_id = send(client, "hi").json()["message_ids"][0]

        response = client.patch(f"/messages/{message_id}", json={"content": "x"}, headers=BOB)

        assert response.status_code == 403
        assert response.json()["code"] == "not_authorized"

    def test_edit_unknown(self, client):
        response = client.patch("/messages/missing", json={"content": "x"}, headers=ALICE)

        assert response.status_code == 404

    def test_edit_window_expired(self, client, clock):
        message_id = send(client, "hi").json()["message_ids"][0]
        clock.advance(minutes=5, milliseconds=1)

        response = client.patch(f"/messages/{message_id}", json={"content": "late"}, headers=ALICE)

        assert response.status_code == 409
        assert response.json()["code"] == "edit_window_expired"

    def test_edit_empty(self, client):
        message_id = send(client, "hi").json()["message_ids"][0]

        response = client.patch(f"/messages/{message_id}", json={"content": "  "}, headers=ALICE)

        assert response.status_code == 422
        assert response.json()["code"] == "empty_content"

    def test_history(self, client, clock):
        message_id = send(client, "v1").json()["message_ids"][0]
        clock.advance(seconds=5)
        client.patch(f"/messages/{message_id}", json={"content": "v2"}, headers=ALICE)

        response = client.get(f"/messages/{message_id}/history", headers=BOB)

        assert response.status_code == 200
        assert response.json() == {
            "message_id": message_id,
            "history": [{"content": "v1", "edited_at": "2025-01-15T10:00:00.000Z"}],
        }


class TestStatusRoutes:
    """Test status, read receipt and unread routes."""

    def test_mark_delivered(self, client):
        message_id = send(client, "hi").json()["message_ids"][0]

        response = client.post(f"/messages/{message_id}/status", json={"status": "delivered"}, headers=BOB)

        assert response.status_code == 200
        assert response.json() == {"message_id": message_id, "status": "delivered"}

    def test_status_regression(self, client):
        message_id = send(client, "hi").json()["message_ids"][0]
        client.post(f"/messages/{message_id}/status", json={"status": "read"}, headers=BOB)

        response = client.post(f"/messages/{message_id}/status", json={"status": "delivered"}, headers=BOB)

        assert response.status_code == 422
        assert response.json()["code"] == "invalid_status_transition"

    def test_unknown_status_value(self, client):
        message_id = send(client, "hi").json()["message_ids"][0]

        response = client.post(f"/messages/{message_id}/status", json={"status": "lost"}, headers=BOB)

        assert response.status_code == 422

    def test_batch_delivered(self, client):
        first = send(client, "one").json()["message_ids"][0]
        second = send(client, "two").json()["message_ids"][0]

        response = client.post("/messages/delivered", json={"message_ids": [first, second]}, headers=BOB)

        assert response.status_code == 200
        assert sorted(response.json()["advanced"]) == sorted([first, second])

    def test_read_receipt(self, client):
        message_id = send(client, "hi").json()["message_ids"][0]

        first = client.post(f"/messages/{message_id}/read", headers=BOB)
        second = client.post(f"/messages/{message_id}/read", headers=BOB)

        assert first.json()["recorded"] is True
        assert second.json()["recorded"] is False
        data = client.get("/conversations/bob", headers=ALICE).json()
        assert data["data"][0]["status"] == "read"

    def test_read_unknown(self, client):
        response = client.post("/messages/missing/read", headers=BOB)

        assert response.status_code == 404

    def test_unread_and_mark_conversation_read(self, client):
        send(client, "one")
        send(client, "two")
        send(client, "three", headers={"X-User-Id": "carol"})

        assert client.get("/unread", headers=BOB).json()["unread"] == 3
        assert client.get("/unread", params={"from_user": "alice"}, headers=BOB).json()["unread"] == 2

        response = client.post("/conversations/alice/read", headers=BOB)

        assert response.json() == {"marked": 2}
        assert client.get("/unread", headers=BOB).json()["unread"] == 1


class TestMetrics:
    """Test the Prometheus endpoint."""

    def test_metrics_exposed(self, client):
        send(client, "hi")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "messages_sent_total" in response.text
        assert "http_requests_total" in response.text


class TestRequestLogging:
    """Test request ids and the JSON log format."""

    def test_client_request_id_is_reused(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"

    def test_json_formatter_includes_request_context(self):
        formatter = CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s")
        record = logging.LogRecord("chatpipe.test", logging.INFO, __file__, 1, "hello", None, None)

        token = request_id_ctx.set("req-1")
        try:
            payload = json.loads(formatter.format(record))
        finally:
            request_id_ctx.reset(token)

        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["name"] == "chatpipe.test"
        assert payload["request_id"] == "req-1"
        assert payload["ts"].endswith("Z")
