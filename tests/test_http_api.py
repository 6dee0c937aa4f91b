"""Tests for the HTTP API adapter."""
import json

import pytest
from fastapi.testclient import TestClient

from agenthub.api.http_api import create_app, event_stream, sse_frame
from agenthub.core.multiplexer import StreamState
from agenthub.core.services import ServiceContainer
from agenthub.core.types import GenerationOptions
from agenthub.errors import UpstreamError
from agenthub.memory.eternal_memory import EternalMemory

from conftest import FakeProvider


def build_app(settings, registry, embedder, memory, usage, provider):
    services = ServiceContainer(
        settings=settings,
        registry=registry,
        embedder=embedder,
        memory=memory,
        usage=usage,
        provider=provider,
    )
    return create_app(services=services), services


@pytest.fixture
def app_parts(settings, registry, embedder, memory, usage, provider):
    return build_app(settings, registry, embedder, memory, usage, provider)


@pytest.fixture
def client(app_parts):
    app, _ = app_parts
    with TestClient(app) as test_client:
        yield test_client


def sse_events(body):
    frames = [frame for frame in body.split("\n\n") if frame]
    events = []
    for frame in frames:
        assert frame.startswith("data: ")
        data = frame[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


# ============================================================
# Readiness
# ============================================================

def test_routes_are_unavailable_before_startup(app_parts):
    app, _ = app_parts
    test_client = TestClient(app)

    response = test_client.get("/api/agents")
    assert response.status_code == 503
    assert "error" in response.json()

    health = test_client.get("/health").json()
    assert health["status"] == "starting"
    assert health["services"]["memory"] == "initializing"


def test_health_and_status_after_startup(client):
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["services"] == {"agents": "active", "memory": "active", "provider": "active"}

    status = client.get("/status").json()
    assert status["status"] == "operational"
    assert status["agents"]["total"] == 10
    assert status["memory"]["status"] == "active"
    assert status["dispatcher"]["dropped_writes"] == 0

    terminal = client.get("/api/terminal/status").json()
    assert terminal["uptime"].endswith("s")


# ============================================================
# Agents
# ============================================================

def test_list_and_detail(client):
    listing = client.get("/api/agents").json()
    assert listing["total"] == 10
    assert listing["agents"][0]["id"] == "flowi-ceo"

    detail = client.get("/api/agents/hook-master").json()
    assert detail["agent"]["id"] == "hook-master"
    assert detail["capabilities"]["deepThinking"] is False
    assert detail["pricing"]["unit"] == "per_1k_tokens"


def test_unknown_agent_detail_is_404(client):
    response = client.get("/api/agents/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "Agent 'nope' not found"}


def test_generate(client, usage):
    response = client.post("/api/agents/flowi-ceo/generate", json={"prompt": "hello"})

    assert response.status_code == 200
    data = response.json()
    assert data["content"] == "Hello from upstream"
    assert data["model"] == "doubao-1.5-pro-32k"
    assert data["cost"] > 0
    assert usage.get_usage_stats()["flowi-ceo"]["calls"] == 1


def test_generate_accepts_camel_case_options(client, provider):
    response = client.post(
        "/api/agents/flowi-ceo/generate",
        json={"prompt": "hello", "options": {"sessionId": "web-1", "deepThinking": True}},
    )

    assert response.status_code == 200
    assert response.json()["sessionId"] == "web-1"
    assert provider.requests[0]["thinking"] == {"type": "enabled"}


@pytest.mark.parametrize("body", [
    {},
    {"prompt": ""},
    {"prompt": "hi", "options": {"temperatureBoost": 3}},
    {"prompt": "hi", "extra": True},
    {"prompt": "hi", "options": {"temperature": 5}},
])
def test_generate_bad_requests_are_400(client, provider, body):
    response = client.post("/api/agents/flowi-ceo/generate", json=body)

    assert response.status_code == 400
    assert "error" in response.json()
    assert provider.complete_calls == 0


def test_generate_unknown_agent_is_404(client, memory):
    response = client.post("/api/agents/ghost/generate", json={"prompt": "hi"})

    assert response.status_code == 404
    assert memory.get_stats()["turns"] == 0


def test_upstream_failure_is_500(settings, registry, embedder, memory, usage):
    provider = FakeProvider(errors=[UpstreamError("302AI HTTP ERROR (502)")])
    app, _ = build_app(settings, registry, embedder, memory, usage, provider)

    with TestClient(app) as test_client:
        response = test_client.post("/api/agents/flowi-ceo/generate", json={"prompt": "hi"})

    assert response.status_code == 500
    assert response.json() == {"error": "302AI HTTP ERROR (502)"}


# ============================================================
# Streaming
# ============================================================

def test_stream_frames_end_with_done(client, memory):
    response = client.post(
        "/api/agents/flowi-ceo/stream",
        json={"prompt": "hello", "options": {"sessionId": "st-1"}},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = sse_events(response.text)
    assert events[-1] == "[DONE]"
    assert [e["content"] for e in events[:-1]] == ["Hel", "lo", " world"]
    assert all(e["type"] == "content" for e in events[:-1])
    assert memory.get_session_context("st-1")[0].assistant_response == "Hello world"


def test_stream_failure_ends_with_error_event(settings, registry, embedder, memory, usage):
    provider = FakeProvider(tokens=["a", "b"], fail_after=1)
    app, _ = build_app(settings, registry, embedder, memory, usage, provider)

    with TestClient(app) as test_client:
        response = test_client.post("/api/agents/flowi-ceo/stream", json={"prompt": "hi"})

    events = sse_events(response.text)
    assert events[0] == {"type": "content", "content": "a"}
    assert events[-1] == {"type": "error", "error": "FAKE STREAM ERROR"}
    assert "[DONE]" not in events
    assert memory.get_stats()["turns"] == 0
    assert provider.open_streams == 0


class DisconnectingRequest:
    """Request double whose client goes away after `connected_checks` polls."""

    def __init__(self, connected_checks):
        self.connected_checks = connected_checks
        self.checks = 0

    async def is_disconnected(self):
        self.checks += 1
        return self.checks > self.connected_checks


@pytest.mark.anyio
async def test_client_disconnect_cancels_stream(dispatcher, provider, memory, usage):
    handle = await dispatcher.stream("flowi-ceo", "hello", GenerationOptions(session_id="gone"))

    frames = [frame async for frame in event_stream(DisconnectingRequest(connected_checks=1), handle)]

    assert frames == [sse_frame({"type": "content", "content": "Hel"})]
    assert handle.state is StreamState.CANCELLED
    assert provider.open_streams == 0
    assert provider.pulled == 2
    assert memory.get_session_context("gone") == []
    assert usage.get_usage_stats() == {}
    assert dispatcher.stats()["discarded_partials"] == 1


def test_stream_validation_errors_are_json(client):
    assert client.post("/api/agents/ghost/stream", json={"prompt": "hi"}).status_code == 404
    response = client.post("/api/agents/flowi-ceo/stream", json={"prompt": ""})
    assert response.status_code == 400
    assert response.json() == {"error": "Prompt is required"}


# ============================================================
# Terminal + memory
# ============================================================

def test_terminal_chat_requires_message(client):
    response = client.post("/api/terminal/chat", json={"sessionId": "t1"})
    assert response.status_code == 400
    assert response.json() == {"error": "Message is required"}


def test_terminal_chat_merges_session_memory(client, provider):
    client.post("/api/terminal/chat", json={"message": "my name is Ana", "sessionId": "t1"})
    response = client.post("/api/terminal/chat", json={"message": "what is my name?", "sessionId": "t1"})

    data = response.json()
    assert data["sessionId"] == "t1"
    assert data["memoryActive"] is True
    users = [m["content"] for m in provider.requests[-1]["messages"] if m["role"] == "user"]
    assert users == ["my name is Ana", "what is my name?"]

    context = client.get("/api/memory/sessions/t1").json()
    assert context["count"] == 2
    assert [t["userMessage"] for t in context["context"]] == ["my name is Ana", "what is my name?"]

    latest = client.get("/api/memory/sessions/t1", params={"turns": 1}).json()
    assert [t["userMessage"] for t in latest["context"]] == ["what is my name?"]


def test_terminal_chat_stream(client):
    response = client.post("/api/terminal/chat/stream", json={"message": "hello", "sessionId": "t2"})

    assert sse_events(response.text)[-1] == "[DONE]"
    assert client.get("/api/memory/sessions/t2").json()["count"] == 1


def test_unknown_session_has_empty_context(client):
    data = client.get("/api/memory/sessions/nobody").json()
    assert data["context"] == []
    assert data["count"] == 0


def test_memory_search(client):
    client.post("/api/terminal/chat", json={"message": "coffee marketing ideas", "sessionId": "m1"})
    client.post("/api/terminal/chat", json={"message": "gym workout plan", "sessionId": "m2"})

    data = client.post("/api/memory/search", json={"query": "coffee marketing", "limit": 1}).json()

    assert data["count"] == 1
    assert data["results"][0]["sessionId"] == "m1"
    assert "score" in data["results"][0]


def test_memory_search_empty_store_and_bad_input(client):
    assert client.post("/api/memory/search", json={"query": "x", "limit": 5}).json()["results"] == []
    assert client.post("/api/memory/search", json={"query": "x", "limit": 0}).status_code == 400
    assert client.post("/api/memory/search", json={"query": ""}).status_code == 400


def test_backup(client):
    client.post("/api/terminal/chat", json={"message": "remember this", "sessionId": "b1"})

    data = client.post("/api/terminal/backup").json()

    assert data["message"] == "Backup created successfully"
    assert data["backup"]["turnCount"] == 1
    assert "b1" in data["backup"]["sessions"]


def test_restore_rebuilds_empty_store(client, settings, registry, embedder, usage, provider):
    client.post("/api/terminal/chat", json={"message": "remember this", "sessionId": "r1"})
    backup = client.post("/api/terminal/backup").json()["backup"]

    fresh = EternalMemory(embedder, registry=registry).open()
    app, _ = build_app(settings, registry, embedder, fresh, usage, provider)
    with TestClient(app) as other:
        response = other.post("/api/terminal/restore", json=backup)
        context = other.get("/api/memory/sessions/r1").json()

    assert response.status_code == 200
    assert response.json()["restored"] == 1
    assert [t["userMessage"] for t in context["context"]] == ["remember this"]


def test_restore_into_non_empty_store_is_400(client):
    client.post("/api/terminal/chat", json={"message": "hi", "sessionId": "r2"})
    backup = client.post("/api/terminal/backup").json()["backup"]

    response = client.post("/api/terminal/restore", json=backup)

    assert response.status_code == 400
    assert response.json() == {"error": "Backups can only be restored into an empty store"}
    assert client.post("/api/terminal/restore", json={"format": "zip"}).status_code == 400


def test_memory_routes_are_503_when_store_is_down(client, app_parts):
    _, services = app_parts
    services.memory.close()

    assert client.get("/api/memory/sessions/s1").status_code == 503
    assert client.post("/api/memory/search", json={"query": "x"}).status_code == 503
    response = client.post("/api/terminal/backup")
    assert response.status_code == 503
    assert client.post("/api/terminal/restore", json={}).status_code == 503
    assert response.json() == {"error": "Memory system not available"}
    assert client.post(
        "/api/terminal/chat", json={"message": "hi", "sessionId": "s1"}
    ).status_code == 503


# ============================================================
# Tasks
# ============================================================

def test_task_routes(client, provider):
    hook = client.post("/api/hooks/create", json={"platform": "tiktok", "topic": "coffee"})
    assert hook.status_code == 200
    assert hook.json()["agentId"] == "hook-master"

    trend = client.post("/api/trends/analyze", json={"topic": "ai art"})
    assert trend.json()["agentId"] == "trend-researcher"

    optimize = client.post(
        "/api/content/optimize",
        json={"content": "my post", "metrics": {"likes": 10}},
    )
    assert optimize.json()["agentId"] == "content-optimizer"
    assert '"likes": 10' in provider.requests[-1]["messages"][-1]["content"]

    thumb = client.post("/api/thumbnails/design", json={"videoTitle": "Morning routine"})
    assert thumb.json()["agentId"] == "thumbnail-designer"


def test_task_missing_field_is_400(client):
    response = client.post("/api/hooks/create", json={"platform": "tiktok"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields: topic"}


def test_terminal_command(client):
    data = client.post("/api/terminal/command", json={"command": "show stats"}).json()

    assert data["command"] == "show stats"
    assert data["interpretation"] == "Hello from upstream"
    assert data["executed"] is True


def test_unexpected_errors_use_internal_error_envelope(app_parts, monkeypatch):
    app, services = app_parts

    def explode(query, limit):
        raise RuntimeError("index exploded at /var/secret")

    with TestClient(app, raise_server_exceptions=False) as test_client:
        monkeypatch.setattr(services.memory, "semantic_search", explode)
        response = test_client.post("/api/memory/search", json={"query": "x"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
