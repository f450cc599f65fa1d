"""Integration tests for the /chat, /history and /health endpoints."""
import json
import pytest
from fastapi.testclient import TestClient
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from models.conversation import Turn
from services.chat_relay import ChatRelay
from services.errors import BackendAuthError, BackendRateLimitError
from services.history_store import HistoryStore


class FakeBackend:
    """Backend client returning canned fragments or raising a canned error."""

    def __init__(self, fragments=("He", "llo"), error=None):
        self.fragments = list(fragments)
        self.error = error
        self.calls = 0

    def chat(self, turns, max_tokens):
        self.calls += 1
        if self.error:
            raise self.error
        return "".join(self.fragments)

    def stream_chat(self, turns, max_tokens, on_token):
        self.calls += 1
        if self.error:
            raise self.error
        for fragment in self.fragments:
            on_token(fragment)
        return "".join(self.fragments)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def history():
    return HistoryStore(max_exchanges=20)


@pytest.fixture
def client(backend, history):
    """Create a test client with a relay wired to a fake backend."""
    from main import app

    # Startup wiring is skipped: TestClient is not used as a context manager
    app.state.relay = ChatRelay(history, backend, max_tokens=128)
    yield TestClient(app)
    del app.state.relay


def parse_sse(body):
    """Split an SSE body into decoded data payloads."""
    events = []
    for frame in body.split("\n\n"):
        if not frame.startswith("data: "):
            continue
        data = frame[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


def test_health(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == "OK"


def test_chat_json(client, history):
    """Test non-streaming chat."""
    response = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 200
    assert response.json() == {"response": "Hello"}
    assert history.snapshot() == [
        Turn(role="user", content="Hi"),
        Turn(role="assistant", content="Hello"),
    ]


def test_chat_empty_messages(client, backend):
    """Test that an empty message list is a 400 validation error."""
    response = client.post("/chat", json={"messages": []})

    assert response.status_code == 400
    error = response.json()["detail"]["error"]
    assert error["type"] == "validation_error"
    assert error["details"]["reason"] == "empty_input"
    assert backend.calls == 0


def test_chat_invalid_role(client):
    """Test that unknown roles are a 400 validation error."""
    response = client.post("/chat", json={"messages": [{"role": "moderator", "content": "Hi"}]})

    assert response.status_code == 400
    assert response.json()["detail"]["error"]["details"]["reason"] == "invalid_role"


def test_chat_last_message_from_assistant(client):
    """Test that conversations must end with a user message."""
    response = client.post("/chat", json={"messages": [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
    ]})

    assert response.status_code == 400
    assert response.json()["detail"]["error"]["details"]["reason"] == "not_user_terminated"


def test_chat_malformed_body(client, backend):
    """Test that a body that is not a ChatRequest is a 400 validation error."""
    response = client.post("/chat", json={"messages": "not a list"})

    assert response.status_code == 400
    error = response.json()["detail"]["error"]
    assert error["type"] == "validation_error"
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"]["reason"] == "malformed_input"
    assert backend.calls == 0


def test_chat_null_content(client, history):
    """Test that a null content field gets the same error on HTTP as on WebSocket."""
    payload = {"messages": [{"role": "user", "content": None}]}

    response = client.post("/chat", json=payload)
    with client.websocket_connect("/chat") as websocket:
        websocket.send_json(payload)
        message = websocket.receive_json()

    assert response.status_code == 400
    http_error = response.json()["detail"]["error"]
    assert http_error["details"]["reason"] == "malformed_input"
    assert http_error["type"] == message["error"]["type"] == "validation_error"
    assert message["error"]["details"]["reason"] == "malformed_input"
    assert history.snapshot() == []


def test_chat_invalid_json_body(client):
    """Test that a body that is not JSON at all is a 400 validation error."""
    response = client.post(
        "/chat",
        content="not json",
        headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json()["detail"]["error"]["details"]["reason"] == "malformed_input"


def test_chat_rate_limited(client, backend, history):
    """Test that rate limits surface as 429 and keep the orphaned prompt."""
    backend.error = BackendRateLimitError("Rate limit exceeded.", {"retry_after": 60})

    response = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 429
    error = response.json()["detail"]["error"]
    assert error["code"] == "RATE_LIMIT_ERROR"
    assert error["details"]["retry_after"] == 60
    assert history.snapshot() == [Turn(role="user", content="Hi")]


def test_chat_auth_failure(client, backend):
    """Test that authentication failures surface as 401."""
    backend.error = BackendAuthError("Authentication failed.")

    response = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 401
    assert response.json()["detail"]["error"]["type"] == "unauthorized_error"


def test_chat_unexpected_error(client, backend):
    """Test that unclassified failures become 500 internal errors."""
    backend.error = RuntimeError("boom")

    response = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 500
    assert response.json()["detail"]["error"]["type"] == "internal_error"


def test_chat_sse_via_accept_header(client, history):
    """Test Server-Sent Events streaming selected by the Accept header."""
    response = client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "Hi"}]},
        headers={"Accept": "text/event-stream"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert parse_sse(response.text) == [
        {"type": "token", "content": "He"},
        {"type": "token", "content": "llo"},
        {"type": "done", "response": "Hello"},
        "[DONE]",
    ]
    assert history.snapshot()[-1] == Turn(role="assistant", content="Hello")


def test_chat_sse_via_query_param(client):
    """Test streaming selected by ?stream=true."""
    response = client.post("/chat?stream=true", json={"messages": [{"role": "user", "content": "Hi"}]})

    events = parse_sse(response.text)
    assert [e["content"] for e in events if isinstance(e, dict) and e["type"] == "token"] == ["He", "llo"]


def test_chat_sse_via_body_flag(client):
    """Test streaming selected by the request body."""
    response = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}], "stream": True})

    assert parse_sse(response.text)[-1] == "[DONE]"


def test_chat_sse_backend_error(client, backend, history):
    """Test that backend failures are reported in-band on the event stream."""
    backend.error = BackendRateLimitError("Rate limit exceeded.")

    response = client.post("/chat?stream=true", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 200
    events = parse_sse(response.text)
    assert len(events) == 1
    assert events[0]["type"] == "error"
    assert events[0]["error"]["code"] == "RATE_LIMIT_ERROR"
    assert history.snapshot() == [Turn(role="user", content="Hi")]


def test_chat_sse_validation_error(client, backend):
    """Test that invalid streaming requests are rejected before streaming."""
    response = client.post("/chat?stream=true", json={"messages": []})

    assert response.status_code == 400
    assert response.json()["detail"]["error"]["type"] == "validation_error"
    assert backend.calls == 0


def test_chat_websocket(client, history):
    """Test token streaming over a WebSocket."""
    with client.websocket_connect("/chat") as websocket:
        websocket.send_json({"messages": [{"role": "user", "content": "Hi"}]})
        assert websocket.receive_json() == {"token": "He"}
        assert websocket.receive_json() == {"token": "llo"}
        assert websocket.receive_json() == {"done": True, "response": "Hello"}

    assert history.snapshot() == [
        Turn(role="user", content="Hi"),
        Turn(role="assistant", content="Hello"),
    ]


def test_chat_websocket_validation_error(client, backend):
    """Test that invalid WebSocket requests get an error message."""
    with client.websocket_connect("/chat") as websocket:
        websocket.send_json({"messages": [{"role": "assistant", "content": "Hello"}]})
        message = websocket.receive_json()

    assert message["error"]["type"] == "validation_error"
    assert message["error"]["details"]["reason"] == "not_user_terminated"
    assert backend.calls == 0


def test_chat_websocket_invalid_json(client):
    """Test that a malformed first WebSocket message is rejected."""
    with client.websocket_connect("/chat") as websocket:
        websocket.send_text("not json")
        message = websocket.receive_json()

    assert message["error"]["details"]["reason"] == "malformed_input"
    assert "invalid JSON" in message["error"]["message"]


def test_chat_websocket_schema_mismatch(client, backend):
    """Test that well-formed JSON which is not a ChatRequest is reported as such."""
    with client.websocket_connect("/chat") as websocket:
        websocket.send_json({"messages": "not a list"})
        message = websocket.receive_json()

    assert message["error"]["details"]["reason"] == "malformed_input"
    assert message["error"]["message"] == "Invalid chat request"
    assert message["error"]["details"]["errors"][0]["loc"] == ["messages"]
    assert backend.calls == 0


def test_chat_websocket_backend_error(client, backend):
    """Test that backend failures are sent as a WebSocket error message."""
    backend.error = BackendRateLimitError("Rate limit exceeded.")

    with client.websocket_connect("/chat") as websocket:
        websocket.send_json({"messages": [{"role": "user", "content": "Hi"}]})
        message = websocket.receive_json()

    assert message["error"]["code"] == "RATE_LIMIT_ERROR"


def test_history_snapshot_and_clear(client, history):
    """Test reading and clearing the shared conversation."""
    client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    response = client.get("/history")
    assert response.status_code == 200
    assert response.json() == {"messages": [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
    ]}

    response = client.delete("/history")
    assert response.status_code == 204
    assert history.snapshot() == []
    assert client.get("/history").json() == {"messages": []}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
