"""Upstream provider endpoint map and credential lookup.

Architectural role:
    Centralizes the OpenAI-compatible chat-completions endpoints the client can
    talk to, and resolves API keys for them. Provider selection itself comes from
    `Settings.provider`.

Determinism:
    Deterministic for a fixed process environment and key files.

Failure behavior:
    Missing key material is represented as `None`; `client.ProviderClient` turns
    that into an `UpstreamError` without echoing paths or values.
"""

import os


# OpenAI-compatible chat-completions endpoints.
PROVIDERS = {

    "302ai": {
        "url": "https://api.302.ai/v1/chat/completions",
        "key_file": "config/302ai.key"
    },

    "local": {
        "url": "http://127.0.0.1:8080/v1/chat/completions",
        "key_file": None
    },

    "openai": {
        "url": "https://api.openai.com/v1/chat/completions",
        "key_file": "config/openai.key"
    },

    "groq": {
        "url": "https://api.groq.com/openai/v1/chat/completions",
        "key_file": "config/groq.key"
    },

    "together": {
        "url": "https://api.together.xyz/v1/chat/completions",
        "key_file": "config/together.key"
    },

    "openrouter": {
        "url": "https://openrouter.ai/api/v1/chat/completions",
        "key_file": "config/openrouter.key"
    },

    "deepinfra": {
        "url": "https://api.deepinfra.com/v1/openai/chat/completions",
        "key_file": "config/deepinfra.key"
    },

    "volcengine": {
        "url": "https://ark.cn-beijing.volces.com/api/v3/chat/completions",
        "key_file": "config/volcengine.key"
    },

}


def key_env_name(path):
    """Map a key file path to its environment override (`config/openai.key` -> `OPENAI_API_KEY`)."""
    return os.path.splitext(os.path.basename(path))[0].upper() + "_API_KEY"


def load_key(path):
    """Load API key from environment override or key file.

    Resolution order:
        1. Environment variable inferred from file stem (for example
           `config/302ai.key` -> `302AI_API_KEY`).
        2. Raw file contents at `path`.

    Edge cases:
        - `None` path returns `None`.
        - Missing file returns `None`.
    """
    if not path:
        return None
    env_value = os.getenv(key_env_name(path))
    if env_value:
        return env_value
    if not os.path.exists(path):
        return None
    with open(path, "r") as f:
        return f.read().strip() or None
