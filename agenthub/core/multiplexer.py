"""Streaming response multiplexer.

Architectural role:
    Sits between the dispatcher and the consumer of a streaming generation. It
    pulls upstream token events one at a time, relays them as normalized `Chunk`s
    in arrival order, accumulates the answer text, and hands the full text back
    for persistence when (and only when) the upstream completes.

State machine:
    STARTED -> EMITTING -> COMPLETED | FAILED | CANCELLED

    - STARTED: created; the upstream is opened on first iteration.
    - EMITTING: at least one chunk relayed.
    - COMPLETED: upstream exhausted. Upstream released, `on_complete(text)`
      awaited, then the `done` sentinel chunk is yielded.
    - FAILED: upstream raised. One `error` chunk is yielded; partial text is not
      persisted.
    - CANCELLED: `cancel()` was called or the consumer stopped iterating. No
      further upstream units are requested; partial text is not persisted.

Suspension points:
    Exactly one upstream unit is requested per loop iteration. Synchronous
    upstream iterators (the `requests` client) run `next()` in a worker thread;
    the cancellation flag is checked before and after every unit.

Resource guarantee:
    The upstream iterator is closed on every exit path. When a `next()` call is
    still running in a worker thread at cancellation time, the iterator's
    `abort()` (if any) is called to unblock it, and the close happens as soon as
    that call returns.
"""

import asyncio
import enum
import logging
import threading

from agenthub.errors import AgentHubError
from agenthub.core.types import (
    CHUNK_CONTENT,
    CHUNK_DONE,
    CHUNK_ERROR,
    CHUNK_REASONING,
    Chunk,
)


logger = logging.getLogger(__name__)


class StreamState(str, enum.Enum):
    STARTED = "started"
    EMITTING = "emitting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED)

_EXHAUSTED = object()


class _SyncUpstream:
    """Adapter running a blocking iterator one unit at a time off the event loop."""

    def __init__(self, iterator):
        self._iterator = iter(iterator)
        self._lock = threading.Lock()
        self._closed = False
        self._released = False

    def _next_blocking(self):
        with self._lock:
            if self._closed:
                return _EXHAUSTED
            return next(self._iterator, _EXHAUSTED)

    async def next(self):
        return await asyncio.to_thread(self._next_blocking)

    def _release_locked(self):
        if self._released:
            return
        self._released = True
        close = getattr(self._iterator, "close", None)
        if close is not None:
            try:
                close()
            except Exception:
                logger.exception("Failed to close upstream iterator")

    def _release_blocking(self):
        with self._lock:
            self._release_locked()

    async def close(self):
        self._closed = True
        if self._lock.acquire(blocking=False):
            try:
                self._release_locked()
            finally:
                self._lock.release()
        else:
            # A next() is running in a worker thread. Abort the live transport
            # so it returns, then close once it has.
            abort = getattr(self._iterator, "abort", None)
            if abort is not None:
                try:
                    abort()
                except Exception:
                    logger.exception("Failed to abort upstream iterator")
            threading.Thread(target=self._release_blocking, daemon=True).start()


class _AsyncUpstream:
    def __init__(self, iterator):
        self._iterator = iterator.__aiter__()
        self._released = False

    async def next(self):
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            return _EXHAUSTED

    async def close(self):
        if self._released:
            return
        self._released = True
        aclose = getattr(self._iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception:
                logger.exception("Failed to close async upstream iterator")


def _adapt(upstream):
    if hasattr(upstream, "__aiter__"):
        return _AsyncUpstream(upstream)
    return _SyncUpstream(upstream)


def normalize_event(event):
    """Map one upstream token event to a `Chunk`, or `None` to skip it.

    Accepts `{"type": ..., "content": ...}` dicts or bare strings (content).
    """
    if isinstance(event, str):
        return Chunk(type=CHUNK_CONTENT, content=event) if event else None

    if not isinstance(event, dict):
        return None

    kind = event.get("type", CHUNK_CONTENT)
    text = event.get("content")
    if not text:
        return None

    if kind == CHUNK_REASONING:
        return Chunk(type=CHUNK_REASONING, content=str(text))
    return Chunk(type=CHUNK_CONTENT, content=str(text))


class StreamMultiplexer:
    """One cancellable, ordered streaming generation.

    Args:
        open_upstream: Zero-argument callable returning the upstream iterator
            (sync or async) of token events.
        on_complete: Optional `async (text, reasoning) -> None` awaited on
            COMPLETED before the sentinel is emitted.
        on_abort: Optional `(state, partial_text) -> None` called once when the
            stream ends FAILED or CANCELLED.
        label: Identifier used in log lines.
    """

    def __init__(self, open_upstream, on_complete=None, on_abort=None, label="stream"):
        self._open_upstream = open_upstream
        self._on_complete = on_complete
        self._on_abort = on_abort
        self.label = label

        self.state = StreamState.STARTED
        self.error = None
        self.emitted = 0
        self._parts = []
        self._reasoning_parts = []
        self._cancelled = False
        self._consumed = False

    @property
    def text(self):
        """Accumulated answer text so far."""
        return "".join(self._parts)

    @property
    def reasoning(self):
        return "".join(self._reasoning_parts) or None

    @property
    def finished(self):
        return self.state in TERMINAL_STATES

    def cancel(self):
        """Request cancellation; takes effect at the next suspension point."""
        if not self.finished:
            self._cancelled = True

    def __aiter__(self):
        return self.events()

    def _abort(self, state, error=None):
        if self.finished:
            return
        self.state = state
        self.error = error
        logger.info(
            "Stream %s %s after %d chunks (%d chars discarded)",
            self.label,
            state.value,
            self.emitted,
            len(self.text),
        )
        if self._on_abort is not None:
            try:
                self._on_abort(state, self.text)
            except Exception:
                logger.exception("Stream abort handler failed for %s", self.label)

    async def events(self):
        """Yield `Chunk`s in upstream order, ending with `done` or `error`.

        Raises:
            RuntimeError: When iterated a second time.
        """
        if self._consumed:
            raise RuntimeError("Stream can only be consumed once")
        self._consumed = True

        upstream = None
        try:
            if self._cancelled:
                self._abort(StreamState.CANCELLED)
                return

            upstream = _adapt(self._open_upstream())

            while True:
                if self._cancelled:
                    self._abort(StreamState.CANCELLED)
                    return

                event = await upstream.next()

                if event is _EXHAUSTED:
                    break

                if self._cancelled:
                    self._abort(StreamState.CANCELLED)
                    return

                chunk = normalize_event(event)
                if chunk is None:
                    continue

                if chunk.type == CHUNK_REASONING:
                    self._reasoning_parts.append(chunk.content)
                else:
                    self._parts.append(chunk.content)

                self.state = StreamState.EMITTING
                self.emitted += 1
                yield chunk

            await upstream.close()
            self.state = StreamState.COMPLETED

            if self._on_complete is not None:
                try:
                    await self._on_complete(self.text, self.reasoning)
                except Exception:
                    logger.exception("Stream completion handler failed for %s", self.label)

            yield Chunk(type=CHUNK_DONE)

        except (GeneratorExit, asyncio.CancelledError):
            self._abort(StreamState.CANCELLED)
            raise

        except Exception as err:
            if isinstance(err, AgentHubError):
                message = err.message
            else:
                logger.exception("Upstream stream %s failed", self.label)
                message = "Stream failed"
            self._abort(StreamState.FAILED, message)
            yield Chunk(type=CHUNK_ERROR, error=message)

        finally:
            if upstream is not None:
                await upstream.close()
