"""Tests for the streaming multiplexer state machine."""
import asyncio
import threading

import pytest

from agenthub.core.multiplexer import StreamMultiplexer, StreamState
from agenthub.errors import UpstreamError

from conftest import FakeProvider


async def collect(multiplexer):
    return [chunk async for chunk in multiplexer]


@pytest.mark.anyio
async def test_chunks_are_relayed_in_order_then_done():
    provider = FakeProvider(tokens=["a", "b", "c"])
    mux = StreamMultiplexer(lambda: provider.stream({}))

    chunks = await collect(mux)

    assert [c.type for c in chunks] == ["content", "content", "content", "done"]
    assert [c.content for c in chunks[:3]] == ["a", "b", "c"]
    assert mux.state is StreamState.COMPLETED
    assert mux.text == "abc"
    assert provider.open_streams == 0


@pytest.mark.anyio
async def test_async_upstream_is_supported():
    async def upstream():
        for token in ("x", "y"):
            yield token

    mux = StreamMultiplexer(upstream)
    chunks = await collect(mux)

    assert [c.content for c in chunks if c.type == "content"] == ["x", "y"]
    assert chunks[-1].type == "done"


@pytest.mark.anyio
async def test_completion_handler_runs_before_sentinel():
    seen = []

    async def on_complete(text, reasoning):
        seen.append(("complete", text))

    provider = FakeProvider(tokens=["hi"])
    mux = StreamMultiplexer(lambda: provider.stream({}), on_complete=on_complete)

    async for chunk in mux:
        seen.append((chunk.type, chunk.content))

    assert seen == [("content", "hi"), ("complete", "hi"), ("done", None)]


@pytest.mark.anyio
async def test_reasoning_is_relayed_but_not_accumulated():
    provider = FakeProvider(tokens=["answer"], reasoning="thinking...")
    mux = StreamMultiplexer(lambda: provider.stream({}))

    chunks = await collect(mux)

    assert chunks[0].type == "reasoning"
    assert mux.text == "answer"
    assert mux.reasoning == "thinking..."


@pytest.mark.anyio
async def test_upstream_failure_ends_with_error_chunk():
    aborted = []
    completed = []

    async def on_complete(text, reasoning):
        completed.append(text)

    provider = FakeProvider(tokens=["a", "b", "c"], fail_after=1)
    mux = StreamMultiplexer(
        lambda: provider.stream({}),
        on_complete=on_complete,
        on_abort=lambda state, text: aborted.append((state, text)),
    )

    chunks = await collect(mux)

    assert [c.type for c in chunks] == ["content", "error"]
    assert chunks[-1].error == "FAKE STREAM ERROR"
    assert mux.state is StreamState.FAILED
    assert completed == []
    assert aborted == [(StreamState.FAILED, "a")]
    assert provider.open_streams == 0


@pytest.mark.anyio
async def test_unexpected_failure_is_sanitized():
    def upstream():
        yield "partial"
        raise RuntimeError("secret connection string")

    mux = StreamMultiplexer(upstream)
    chunks = await collect(mux)

    assert chunks[-1].type == "error"
    assert chunks[-1].error == "Stream failed"


@pytest.mark.anyio
async def test_cancel_stops_pulling_and_releases_upstream():
    aborted = []
    completed = []

    async def on_complete(text, reasoning):
        completed.append(text)

    provider = FakeProvider(tokens=["a", "b", "c", "d"])
    mux = StreamMultiplexer(
        lambda: provider.stream({}),
        on_complete=on_complete,
        on_abort=lambda state, text: aborted.append((state, text)),
    )

    received = []
    async for chunk in mux:
        received.append(chunk)
        mux.cancel()

    assert [c.content for c in received] == ["a"]
    assert mux.state is StreamState.CANCELLED
    assert provider.pulled == 1
    assert provider.open_streams == 0
    assert completed == []
    assert aborted == [(StreamState.CANCELLED, "a")]


@pytest.mark.anyio
async def test_consumer_closing_early_cancels_stream():
    provider = FakeProvider(tokens=["a", "b", "c"])
    mux = StreamMultiplexer(lambda: provider.stream({}))

    events = mux.events()
    first = await events.__anext__()
    await events.aclose()

    assert first.content == "a"
    assert mux.state is StreamState.CANCELLED
    assert provider.open_streams == 0


@pytest.mark.anyio
async def test_cancel_before_start_never_opens_upstream():
    provider = FakeProvider()
    mux = StreamMultiplexer(lambda: provider.stream({}))
    mux.cancel()

    assert await collect(mux) == []
    assert mux.state is StreamState.CANCELLED
    assert provider.opened_streams == 0


@pytest.mark.anyio
async def test_stream_can_only_be_consumed_once():
    mux = StreamMultiplexer(lambda: iter(["a"]))
    await collect(mux)

    with pytest.raises(RuntimeError):
        await collect(mux)


@pytest.mark.anyio
async def test_typed_upstream_error_before_first_chunk():
    def upstream():
        raise UpstreamError("302AI HTTP ERROR (429)", transient=True)
        yield  # pragma: no cover

    mux = StreamMultiplexer(upstream)
    chunks = await collect(mux)

    assert [c.type for c in chunks] == ["error"]
    assert chunks[0].error == "302AI HTTP ERROR (429)"
    assert mux.emitted == 0


class BlockingUpstream:
    """Sync upstream whose next() blocks until aborted."""

    def __init__(self):
        self.waiting = threading.Event()
        self.unblocked = threading.Event()
        self.aborted = False
        self.closed = threading.Event()

    def __iter__(self):
        return self

    def __next__(self):
        self.waiting.set()
        if not self.unblocked.wait(timeout=5):
            raise RuntimeError("upstream read was never interrupted")
        raise StopIteration

    def abort(self):
        self.aborted = True
        self.unblocked.set()

    def close(self):
        self.closed.set()


@pytest.mark.anyio
async def test_cancel_during_blocked_read_aborts_upstream():
    upstream = BlockingUpstream()
    mux = StreamMultiplexer(lambda: upstream)
    events = mux.events()

    pending = asyncio.ensure_future(events.__anext__())
    assert await asyncio.to_thread(upstream.waiting.wait, 5)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    assert upstream.aborted
    assert mux.state is StreamState.CANCELLED
    assert await asyncio.to_thread(upstream.closed.wait, 5)
