"""Generation dispatcher: agent resolution, context merge, upstream call, persistence.

Architectural role:
    The single entry point for every generation, sync or streaming. API and CLI
    adapters call `generate` / `stream` / `run_task`; nothing else talks to the
    provider, the memory store or usage accounting on the generation path.

Control-flow model:
    1. Validate the prompt and options (`InvalidArgument`).
    2. Resolve the agent in the registry (`NotFound`).
    3. With an explicit session id, fetch the session context window from eternal
       memory (`Unavailable` when the store is down).
    4. Merge context into the outbound messages under the prompt token budget.
    5. Call the provider (sync) or return a `StreamMultiplexer` (stream).
    6. On success, record usage and persist the Turn (best-effort, retried).

Error handling strategy:
    - Validation failures never reach the provider and leave no trace in memory or
      usage counters.
    - `UpstreamError` is surfaced unchanged. Only failures flagged `transient` are
      retried, at most `upstream_retries` times (0 or 1).
    - Memory persistence after a delivered answer never fails the request: each
      Turn gets `memory_write_attempts` tries, then is dropped and counted.

Side effects:
    Provider HTTP calls, memory writes, usage counter updates, log lines.
"""

import asyncio
import logging
import threading

from agenthub.errors import InvalidArgument, Unavailable, UpstreamError
from agenthub.core.multiplexer import StreamMultiplexer, StreamState
from agenthub.core.types import GenerationOptions, GenerationResult
from agenthub.llm.service import build_payload
from agenthub.memory.models import ANONYMOUS_SESSION, ContextWindow, Turn, estimate_tokens
from agenthub.prompting.prompt_builder import build_messages
from agenthub.prompting.tasks import get_task


logger = logging.getLogger(__name__)


def compute_cost(agent, usage, messages, content):
    """Compute the cost of one generation from the agent's pricing.

    Args:
        agent: Resolved `Agent`.
        usage: Provider `usage` dict, or `None`.
        messages: Outbound messages (for the token estimate fallback).
        content: Generated text (for the token estimate fallback).

    Returns:
        Non-negative cost, or `None` when the agent has no pricing.
    """
    pricing = agent.pricing
    if pricing is None:
        return None

    if pricing.unit == "per_request":
        return pricing.rate

    total_tokens = None
    if isinstance(usage, dict):
        total_tokens = usage.get("total_tokens")
        if total_tokens is None and (
            "prompt_tokens" in usage or "completion_tokens" in usage
        ):
            total_tokens = (usage.get("prompt_tokens") or 0) + (usage.get("completion_tokens") or 0)

    if not isinstance(total_tokens, (int, float)) or total_tokens < 0:
        total_tokens = sum(estimate_tokens(m["content"]) for m in messages) + estimate_tokens(content)

    return round((total_tokens / 1000) * pricing.rate, 8)


class GenerationDispatcher:
    """Resolves agents, merges memory, calls the provider and persists turns.

    Args:
        registry: `AgentRegistry`.
        provider: Object with `complete(request) -> dict` and
            `stream(request) -> iterator of token events`.
        memory: `EternalMemory` or `None` when memory is not configured.
        usage: `UsageAccounting`.
        settings: `Settings` (context bounds, budgets, retry policy).
    """

    def __init__(self, registry, provider, memory, usage, settings):
        self.registry = registry
        self.provider = provider
        self.memory = memory
        self.usage = usage
        self.settings = settings

        self._counters = {
            "generations": 0,
            "streams": 0,
            "failures": 0,
            "persisted_turns": 0,
            "dropped_writes": 0,
            "discarded_partials": 0,
        }
        self._counters_lock = threading.Lock()

    # =========================================================
    # COUNTERS
    # =========================================================

    def _count(self, name, amount=1):
        with self._counters_lock:
            self._counters[name] += amount

    @property
    def dropped_writes(self):
        with self._counters_lock:
            return self._counters["dropped_writes"]

    def stats(self):
        with self._counters_lock:
            return dict(self._counters)

    # =========================================================
    # PREPARATION
    # =========================================================

    def _window(self, options):
        return ContextWindow(
            max_turns=(
                self.settings.context_max_turns
                if options.context_turns is None else options.context_turns
            ),
            max_tokens=(
                self.settings.context_max_tokens
                if options.context_tokens is None else options.context_tokens
            ),
        )

    async def _prepare(self, agent_id, prompt, options, stream):
        """Validate inputs and build `(agent, messages, payload)`.

        Raises:
            InvalidArgument, NotFound, Unavailable.
        """
        if options is None:
            options = GenerationOptions()

        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidArgument("Prompt is required")

        agent = self.registry.get(agent_id)

        if options.deep_thinking and not agent.capabilities.deep_thinking:
            raise InvalidArgument(f"Agent '{agent.id}' does not support deep thinking")
        if stream and not agent.capabilities.streaming:
            raise InvalidArgument(f"Agent '{agent.id}' does not support streaming")

        context = []
        if options.session_id:
            if self.memory is None:
                raise Unavailable("Memory system not available")
            context = await asyncio.to_thread(
                self.memory.get_session_context, options.session_id, self._window(options)
            )

        messages, used_turns = build_messages(
            agent, prompt, context, token_budget=self.settings.prompt_token_budget
        )
        payload = build_payload(agent, messages, options, stream=stream)

        if self.settings.debug:
            logger.debug("Outbound payload for %s: %s", agent.id, payload)

        logger.info(
            "Dispatching %s to agent %s (model=%s, context_turns=%d, session=%s)",
            "stream" if stream else "generation",
            agent.id,
            agent.model,
            used_turns,
            options.session_id or "-",
        )
        return agent, messages, payload, options

    # =========================================================
    # PERSISTENCE
    # =========================================================

    async def _persist(self, agent, prompt, content, options, metadata):
        """Store the completed exchange; never raises.

        Returns:
            `True` when the Turn was stored.
        """
        if not options.persist or self.memory is None:
            return False

        turn = Turn(
            session_id=options.session_id or ANONYMOUS_SESSION,
            user_message=prompt,
            assistant_response=content,
            agent_id=agent.id,
            metadata=metadata,
        )

        attempts = self.settings.memory_write_attempts
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(self.memory.store_conversation, turn)
                self._count("persisted_turns")
                return True
            except Exception:
                logger.exception(
                    "Memory write failed for session %s (attempt %d/%d)",
                    turn.session_id,
                    attempt,
                    attempts,
                )

        self._count("dropped_writes")
        logger.error(
            "Dropped memory write for session %s after %d attempts",
            turn.session_id,
            attempts,
        )
        return False

    # =========================================================
    # SYNC GENERATION
    # =========================================================

    async def _complete_with_retry(self, payload):
        retries = self.settings.upstream_retries
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self.provider.complete, payload)
            except UpstreamError as err:
                if not err.transient or attempt >= retries:
                    raise
                attempt += 1
                logger.warning("Transient upstream failure (%s); retrying once", err.message)

    async def generate(self, agent_id, prompt, options=None):
        """Run one non-streaming generation.

        Args:
            agent_id: Registry id of the agent.
            prompt: User prompt, non-empty.
            options: `GenerationOptions`.

        Returns:
            `GenerationResult` whose `model` is the agent's configured model.

        Raises:
            InvalidArgument: Empty prompt or unsupported capability request.
            NotFound: Unknown agent.
            Unavailable: Context requested while memory is down.
            UpstreamError: Provider failure.
        """
        agent, messages, payload, options = await self._prepare(agent_id, prompt, options, stream=False)

        try:
            response = await self._complete_with_retry(payload)
        except UpstreamError:
            self._count("failures")
            raise

        content = response.get("content") or ""
        reasoning = response.get("reasoning") if options.deep_thinking else None
        usage = response.get("usage")
        cost = compute_cost(agent, usage, messages, content)

        self.usage.record(agent.id, cost)
        self._count("generations")

        persisted = await self._persist(
            agent,
            prompt.strip(),
            content,
            options,
            {
                "cost": cost,
                "model": agent.model,
                "deepThinking": bool(reasoning),
                "streaming": False,
            },
        )

        return GenerationResult(
            content=content,
            model=agent.model,
            cost=cost,
            reasoning=reasoning,
            agent_id=agent.id,
            session_id=(options.session_id or ANONYMOUS_SESSION) if persisted else options.session_id,
            usage=usage,
            memory_persisted=persisted,
        )

    # =========================================================
    # STREAMING GENERATION
    # =========================================================

    async def stream(self, agent_id, prompt, options=None):
        """Validate, merge context and return a ready-to-consume `StreamMultiplexer`.

        Validation errors are raised here, before any chunk exists. Upstream
        failures after this point surface as a terminal `error` chunk.
        """
        agent, messages, payload, options = await self._prepare(agent_id, prompt, options, stream=True)
        user_message = prompt.strip()

        async def on_complete(text, reasoning):
            cost = compute_cost(agent, None, messages, text)
            self.usage.record(agent.id, cost)
            self._count("streams")
            if not text:
                return
            await self._persist(
                agent,
                user_message,
                text,
                options,
                {
                    "cost": cost,
                    "model": agent.model,
                    "deepThinking": bool(reasoning),
                    "streaming": True,
                },
            )

        def on_abort(state, partial_text):
            if state is StreamState.FAILED:
                self._count("failures")
            if partial_text:
                self._count("discarded_partials")

        return StreamMultiplexer(
            lambda: self.provider.stream(payload),
            on_complete=on_complete,
            on_abort=on_abort,
            label=f"{agent.id}:{options.session_id or ANONYMOUS_SESSION}",
        )

    # =========================================================
    # AGENT TASKS
    # =========================================================

    async def run_task(self, task_name, fields, options=None):
        """Render a specialized task template and run it on the task's agent."""
        task = get_task(task_name)
        prompt = task.render(fields)
        return await self.generate(task.agent_id, prompt, options)
