"""Outbound request construction for the upstream provider.

Architectural role:
    Turns an agent, a merged message list and generation options into the
    provider-agnostic payload consumed by `client.ProviderClient`. Prompt content
    itself is assembled by `agenthub.prompting.prompt_builder`.

Parameter semantics:
    - `temperature=0.45` and `top_p=0.9` are the shared defaults; options may
      override temperature.
    - `presence_penalty=0.4` / `frequency_penalty=0.5` discourage repetition.
    - `thinking: {"type": "enabled"}` is only sent for deep-thinking requests.

Determinism:
    Pure function of its inputs.
"""

DEFAULT_TEMPERATURE = 0.45
DEFAULT_TOP_P = 0.9


def build_payload(agent, messages, options, stream=False):
    """Build the chat-completions payload for one generation.

    Args:
        agent: Resolved `Agent`; its `model` is always the model sent upstream.
        messages: Ordered chat messages (system, prior turns, user prompt).
        options: `GenerationOptions`.
        stream: Whether the provider should stream deltas.

    Returns:
        JSON-serializable payload dictionary.
    """
    payload = {
        "model": agent.model,
        "messages": messages,
        "temperature": DEFAULT_TEMPERATURE if options.temperature is None else options.temperature,
        "top_p": DEFAULT_TOP_P,
        "presence_penalty": 0.4,
        "frequency_penalty": 0.5,
        "stream": stream,
    }

    if options.max_tokens is not None:
        payload["max_tokens"] = options.max_tokens

    if options.deep_thinking:
        payload["thinking"] = {"type": "enabled"}

    return payload
