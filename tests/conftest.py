import hashlib
import re

import numpy as np
import pytest

from agenthub.agents.registry import BUILTIN_AGENTS, AgentRegistry
from agenthub.config import Settings
from agenthub.core.dispatcher import GenerationDispatcher
from agenthub.errors import UpstreamError
from agenthub.memory.embedding_model import Embedder
from agenthub.memory.eternal_memory import EternalMemory
from agenthub.usage.accounting import UsageAccounting


class HashingModel:
    """Deterministic bag-of-words encoder with the sentence-transformers surface."""

    dim = 256

    def get_sentence_embedding_dimension(self):
        return self.dim

    def encode(self, texts):
        out = np.zeros((len(texts), self.dim), dtype="float32")
        for row, text in enumerate(texts):
            # Drop the E5 "query:" / "passage:" prefix.
            body = text.split(":", 1)[-1]
            for token in re.findall(r"\w+", body.lower()):
                bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dim
                out[row, bucket] += 1.0
            if not out[row].any():
                out[row, 0] = 1.0
        return out


class FakeProvider:
    """In-process upstream that counts open streams."""

    def __init__(
        self,
        content="Hello from upstream",
        tokens=("Hel", "lo", " world"),
        usage=None,
        reasoning=None,
        errors=None,
        fail_after=None,
    ):
        self.content = content
        self.tokens = list(tokens)
        self.usage = usage
        self.reasoning = reasoning
        self.errors = list(errors or [])
        self.fail_after = fail_after

        self.requests = []
        self.complete_calls = 0
        self.open_streams = 0
        self.opened_streams = 0
        self.pulled = 0

    def complete(self, request):
        self.requests.append(request)
        self.complete_calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return {
            "content": self.content,
            "reasoning": self.reasoning,
            "usage": self.usage,
            "model": "provider-reported-model",
        }

    def stream(self, request):
        self.requests.append(request)
        self.opened_streams += 1
        self.open_streams += 1
        try:
            if self.reasoning:
                yield {"type": "reasoning", "content": self.reasoning}
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i == self.fail_after:
                    raise UpstreamError("FAKE STREAM ERROR", provider="fake")
                self.pulled += 1
                yield {"type": "content", "content": token}
        finally:
            self.open_streams -= 1


class FailingMemory:
    """Wraps an EternalMemory and fails the first `failures` writes."""

    def __init__(self, memory, failures):
        self._memory = memory
        self.failures = failures
        self.attempts = 0

    def __getattr__(self, name):
        return getattr(self._memory, name)

    def store_conversation(self, turn):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("disk full")
        return self._memory.store_conversation(turn)


EXTRA_AGENTS = [
    {
        "id": "batch-writer",
        "name": "Batch Writer",
        "capabilities": {"deep_thinking": False, "multimodal": False, "streaming": False},
        "pricing": {"unit": "per_request", "rate": 0.01},
    },
    {
        "id": "free-helper",
        "name": "Free Helper",
        "model": "helper-mini",
    },
]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(memory_dir=None, backup_dir=None)


@pytest.fixture
def registry():
    return AgentRegistry.from_entries(BUILTIN_AGENTS + EXTRA_AGENTS, default_model="doubao-1.5-pro-32k")


@pytest.fixture
def embedder():
    return Embedder(HashingModel())


@pytest.fixture
def memory(embedder, registry):
    store = EternalMemory(embedder, registry=registry).open()
    yield store
    store.close()


@pytest.fixture
def usage():
    return UsageAccounting()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def dispatcher(registry, provider, memory, usage, settings):
    return GenerationDispatcher(
        registry=registry,
        provider=provider,
        memory=memory,
        usage=usage,
        settings=settings,
    )
