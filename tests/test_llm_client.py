"""Tests for the provider client and payload construction."""
import json

import pytest
import requests

from agenthub.agents.registry import AgentRegistry
from agenthub.core.types import GenerationOptions
from agenthub.errors import UpstreamError
from agenthub.llm.client import ProviderClient, extract_delta
from agenthub.llm.provider_config import key_env_name, load_key
from agenthub.llm.service import build_payload


class FakeResponse:
    def __init__(self, status_code=200, payload=None, lines=()):
        self.status_code = status_code
        self._payload = payload
        self._lines = list(lines)
        self.encoding = None
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error for url https://secret", response=self)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_lines(self, decode_unicode=False):
        yield from self._lines

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def local_client():
    def build(response=None, error=None):
        session = FakeSession(response=response, error=error)
        return ProviderClient(provider="local", timeout=5, session=session), session
    return build


def test_complete_parses_message(local_client):
    client, session = local_client(FakeResponse(payload={
        "model": "m",
        "choices": [{"message": {"content": "  answer  ", "reasoning_content": "why"}}],
        "usage": {"total_tokens": 12},
    }))

    result = client.complete({"model": "m", "messages": []})

    assert result == {"content": "answer", "reasoning": "why", "usage": {"total_tokens": 12}, "model": "m"}
    assert session.calls[0][1]["json"]["stream"] is False
    assert session.calls[0][1]["timeout"] == 5


def test_http_error_is_sanitized(local_client):
    client, _ = local_client(FakeResponse(status_code=429))

    with pytest.raises(UpstreamError) as exc:
        client.complete({"model": "m", "messages": []})

    assert exc.value.message == "LOCAL HTTP ERROR (429)"
    assert exc.value.transient is True
    assert "secret" not in exc.value.message


def test_client_error_is_not_transient(local_client):
    client, _ = local_client(FakeResponse(status_code=400))

    with pytest.raises(UpstreamError) as exc:
        client.complete({"model": "m", "messages": []})
    assert exc.value.transient is False


def test_connection_error_is_transient(local_client):
    client, _ = local_client(error=requests.exceptions.ConnectionError("refused"))

    with pytest.raises(UpstreamError) as exc:
        client.complete({"model": "m", "messages": []})
    assert exc.value.transient is True
    assert exc.value.message == "LOCAL HTTP ERROR"


def test_malformed_response(local_client):
    client, _ = local_client(FakeResponse(payload={"choices": []}))

    with pytest.raises(UpstreamError) as exc:
        client.complete({"model": "m", "messages": []})
    assert exc.value.message == "LOCAL MALFORMED RESPONSE"


def test_stream_yields_events_and_closes_response(local_client):
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"reasoning_content": "hmm"}}]}),
        "",
        "data: " + json.dumps({"choices": [{"delta": {"content": "Hel"}}]}),
        "data: not json",
        "data: " + json.dumps({"choices": [{"delta": {"content": "lo"}}]}),
        "data: [DONE]",
        "data: " + json.dumps({"choices": [{"delta": {"content": "ignored"}}]}),
    ]
    response = FakeResponse(lines=lines)
    client, session = local_client(response)

    events = list(client.stream({"model": "m", "messages": []}))

    assert events == [
        {"type": "reasoning", "content": "hmm"},
        {"type": "content", "content": "Hel"},
        {"type": "content", "content": "lo"},
    ]
    assert session.calls[0][1]["stream"] is True
    assert response.closed is True


def test_closing_stream_early_closes_response(local_client):
    lines = ["data: " + json.dumps({"choices": [{"delta": {"content": t}}]}) for t in "abc"]
    response = FakeResponse(lines=lines)
    client, _ = local_client(response)

    stream = client.stream({"model": "m", "messages": []})
    assert next(stream)["content"] == "a"
    stream.close()

    assert response.closed is True


def test_in_band_stream_error(local_client):
    client, _ = local_client(FakeResponse(lines=['data: {"error": {"message": "quota"}}']))

    with pytest.raises(UpstreamError) as exc:
        list(client.stream({"model": "m", "messages": []}))
    assert exc.value.message == "LOCAL STREAM ERROR"


def test_missing_key_is_reported_without_path(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = ProviderClient(provider="openai", session=FakeSession())

    with pytest.raises(UpstreamError) as exc:
        client.complete({"model": "m", "messages": []})
    assert exc.value.message == "OPENAI API KEY NOT CONFIGURED"


def test_key_lookup_prefers_environment(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "from-env")
    assert key_env_name("config/groq.key") == "GROQ_API_KEY"
    assert load_key("config/groq.key") == "from-env"
    assert load_key(None) is None


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        ProviderClient(provider="nope")


@pytest.mark.parametrize("data, expected", [
    ({"choices": [{"delta": {"content": "a"}}]}, ("a", None)),
    ({"choices": [{"message": {"content": "b"}}]}, ("b", None)),
    ({"choices": [{"text": "c"}]}, ("c", None)),
    ({"message": {"content": "d"}}, ("d", None)),
    ({"choices": []}, (None, None)),
])
def test_extract_delta_shapes(data, expected):
    assert extract_delta(data) == expected


def test_payload_uses_agent_model_and_options():
    agent = AgentRegistry.load(default_model="bound-model").get("flowi-ceo")
    messages = [{"role": "user", "content": "hi"}]

    payload = build_payload(agent, messages, GenerationOptions(temperature=0.9, max_tokens=50), stream=True)

    assert payload["model"] == "bound-model"
    assert payload["temperature"] == 0.9
    assert payload["max_tokens"] == 50
    assert payload["stream"] is True
    assert "thinking" not in payload

    default = build_payload(agent, messages, GenerationOptions())
    assert default["temperature"] == 0.45
    assert "max_tokens" not in default


def test_abort_closes_live_response(local_client):
    lines = ["data: " + json.dumps({"choices": [{"delta": {"content": t}}]}) for t in "ab"]
    response = FakeResponse(lines=lines)
    client, _ = local_client(response)

    stream = client.stream({"model": "m", "messages": []})
    assert next(stream)["content"] == "a"
    stream.abort()

    assert stream.aborted is True
    assert response.closed is True


def test_abort_before_first_read_yields_nothing(local_client):
    response = FakeResponse(lines=["data: " + json.dumps({"choices": [{"delta": {"content": "a"}}]})])
    client, _ = local_client(response)

    stream = client.stream({"model": "m", "messages": []})
    stream.abort()

    assert list(stream) == []
    assert response.closed is True
