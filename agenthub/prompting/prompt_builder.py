"""Prompt assembly for agent generations.

This module only builds chat message lists from already-resolved inputs. Agent
resolution, context fetching and model invocation happen in the dispatcher.

Design constraints:
    - Deterministic construction for identical inputs.
    - Fixed ordering: persona system message, prior turns oldest first, new prompt.
    - No I/O, no global state mutation.

Memory injection strategy:
    Prior turns become alternating `user` / `assistant` messages. When the merged
    prompt exceeds the token budget, whole turns are dropped oldest first. If the
    new prompt alone still exceeds the budget, its middle is truncated with a
    marker, keeping the head (instructions) and tail (latest content).
"""

import logging

from agenthub.memory.models import estimate_tokens


logger = logging.getLogger(__name__)


# =========================================================
# SYSTEM IDENTITY (GLOBAL)
# =========================================================
# Prepended to every agent persona.

SYSTEM_IDENTITY = (
    "You are an AI agent of the Flowmatik platform.\n"
    "Respond clearly, precisely, and without repetition.\n"
    "Answer in the language of the user's message.\n\n"
)

TRUNCATION_MARKER = "\n\n[TRUNCATED: PROMPT TOKEN BUDGET]\n\n"


def build_system_message(agent) -> str:
    """Return the persona system prompt for `agent`."""
    persona = agent.role.strip() if agent.role else f"You are {agent.name}."
    languages = ", ".join(agent.capabilities.languages)
    return (
        SYSTEM_IDENTITY +
        persona +
        f"\nSupported languages: {languages}.\n"
    )


def _message_tokens(messages):
    return sum(estimate_tokens(m["content"]) for m in messages)


def truncate_to_budget(text: str, token_budget: int) -> str:
    """Trim `text` to an estimated token budget, keeping head and tail.

    Edge cases:
        - Empty input returns `""`.
        - Very small budgets fall back to direct head truncation.
    """
    if not text:
        return ""

    if estimate_tokens(text) <= token_budget:
        return text

    max_chars = max(token_budget, 1) * 4

    if max_chars <= len(TRUNCATION_MARKER) + 32:
        return text[:max_chars]

    head_budget = int(max_chars * 0.55)
    tail_budget = max_chars - head_budget - len(TRUNCATION_MARKER)
    head = text[:head_budget].rstrip()
    tail = text[-tail_budget:].lstrip()
    return f"{head}{TRUNCATION_MARKER}{tail}"[:max_chars]


def build_messages(agent, prompt: str, context_turns=(), token_budget: int = 3500):
    """Build the outbound message list for one generation.

    Args:
        agent: Resolved `Agent`.
        prompt: New user prompt (non-empty, validated upstream).
        context_turns: Prior Turns of the session, oldest first.
        token_budget: Estimated token bound for the whole message list.

    Returns:
        `(messages, used_turns)` where `used_turns` is the number of context turns
        that survived the budget.

    Determinism:
        Deterministic for identical inputs.
    """
    system = {"role": "system", "content": build_system_message(agent)}
    user = {"role": "user", "content": prompt.strip()}

    fixed_tokens = _message_tokens([system, user])
    if fixed_tokens > token_budget:
        allowed = max(token_budget - estimate_tokens(system["content"]), 1)
        logger.warning(
            "Prompt for agent %s exceeds budget (est_tokens=%d, budget=%d); truncating",
            agent.id,
            fixed_tokens,
            token_budget,
        )
        user = {"role": "user", "content": truncate_to_budget(user["content"], allowed)}
        return [system, user], 0

    turns = list(context_turns)
    remaining = token_budget - fixed_tokens

    kept = []
    for turn in reversed(turns):
        cost = turn.token_estimate()
        if cost > remaining:
            break
        kept.append(turn)
        remaining -= cost
    kept.reverse()

    if len(kept) < len(turns):
        logger.info(
            "Dropped %d oldest context turns for agent %s to fit budget %d",
            len(turns) - len(kept),
            agent.id,
            token_budget,
        )

    messages = [system]
    for turn in kept:
        messages.append({"role": "user", "content": turn.user_message})
        if turn.assistant_response:
            messages.append({"role": "assistant", "content": turn.assistant_response})
    messages.append(user)

    return messages, len(kept)
