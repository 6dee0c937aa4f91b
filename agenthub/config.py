"""Process configuration for agenthub.

Architectural role:
    Reads the environment once (after `load_dotenv()`) and freezes the result into a
    `Settings` object that the startup phase hands to every component. Nothing in the
    core reads `os.environ` on the request path.

Determinism:
    `Settings.from_env()` is deterministic for a fixed process environment and `.env`
    file. Defaults below apply whenever a variable is unset or empty.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


DEFAULT_CORS_ORIGINS = (
    "https://flowmatik.co",
    "https://admin.flowmatik.co",
    "http://localhost:3000",
)


def _env_int(name, default):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_str(name, default=None):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True)
class Settings:
    """Frozen runtime configuration.

    Attributes:
        provider: Key into `llm.provider_config.PROVIDERS`.
        model_name: Default model id for agents that do not name one.
        agents_file: Optional JSON agent catalog replacing the built-in one.
        memory_dir: Directory for the turn log and FAISS index; `None` keeps
            memory in-process only.
        backup_dir: Directory where `createBackup()` writes export files.
        context_max_turns: Default context window bound in turns.
        context_max_tokens: Default context window bound in estimated tokens.
        prompt_token_budget: Upper bound for the merged outbound prompt.
        upstream_retries: Retries on transient provider failures (0 = none).
        upstream_timeout: Provider HTTP timeout in seconds.
        memory_write_attempts: Attempts per Turn persistence before dropping it.
        usage_snapshot_path: Where usage counters are written on shutdown.
        embed_model: sentence-transformers model name.
        cors_origins: Allowed CORS origins.
        debug: Enables request/response payload logging.
    """

    provider: str = "302ai"
    model_name: str = "doubao-1.5-pro-32k"
    agents_file: str | None = None
    memory_dir: str | None = "memory_data"
    backup_dir: str | None = "memory_backups"
    context_max_turns: int = 10
    context_max_tokens: int = 2000
    prompt_token_budget: int = 3500
    upstream_retries: int = 0
    upstream_timeout: int = 120
    memory_write_attempts: int = 2
    usage_snapshot_path: str | None = None
    embed_model: str = "intfloat/multilingual-e5-small"
    log_level: str = "INFO"
    cors_origins: tuple = field(default=DEFAULT_CORS_ORIGINS)
    debug: bool = False

    @classmethod
    def from_env(cls):
        """Build settings from the process environment and an optional `.env` file.

        Raises:
            ValueError: When a numeric variable cannot be parsed or a bound is
                out of range.
        """
        load_dotenv()

        origins = _env_str("CORS_ORIGINS")
        cors_origins = (
            tuple(o.strip() for o in origins.split(",") if o.strip())
            if origins else DEFAULT_CORS_ORIGINS
        )

        settings = cls(
            provider=_env_str("PROVIDER", cls.provider),
            model_name=_env_str("MODEL_NAME", cls.model_name),
            agents_file=_env_str("AGENTS_FILE"),
            memory_dir=_env_str("MEMORY_DIR", cls.memory_dir),
            backup_dir=_env_str("MEMORY_BACKUP_DIR", cls.backup_dir),
            context_max_turns=_env_int("CONTEXT_MAX_TURNS", cls.context_max_turns),
            context_max_tokens=_env_int("CONTEXT_MAX_TOKENS", cls.context_max_tokens),
            prompt_token_budget=_env_int("PROMPT_TOKEN_BUDGET", cls.prompt_token_budget),
            upstream_retries=_env_int("UPSTREAM_RETRIES", cls.upstream_retries),
            upstream_timeout=_env_int("UPSTREAM_TIMEOUT", cls.upstream_timeout),
            memory_write_attempts=_env_int("MEMORY_WRITE_ATTEMPTS", cls.memory_write_attempts),
            usage_snapshot_path=_env_str("USAGE_SNAPSHOT_PATH"),
            embed_model=_env_str("EMBED_MODEL", cls.embed_model),
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
            cors_origins=cors_origins,
            debug=os.getenv("DEBUG") == "true",
        )
        settings.validate()
        return settings

    def validate(self):
        """Reject bounds that would make the dispatcher misbehave."""
        if self.upstream_retries < 0 or self.upstream_retries > 1:
            raise ValueError("UPSTREAM_RETRIES must be 0 or 1")
        if self.memory_write_attempts < 2:
            raise ValueError("MEMORY_WRITE_ATTEMPTS must be at least 2")
        if self.context_max_turns < 0 or self.context_max_tokens < 0:
            raise ValueError("context window bounds must be non-negative")
        if self.prompt_token_budget <= 0:
            raise ValueError("PROMPT_TOKEN_BUDGET must be positive")
        if self.upstream_timeout <= 0:
            raise ValueError("UPSTREAM_TIMEOUT must be positive")
