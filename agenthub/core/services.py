"""Process-wide service construction behind a readiness gate.

Architectural role:
    Builds the registry, embedder, eternal memory, usage accounting, provider
    client and dispatcher exactly once during startup (FastAPI lifespan or CLI
    main), instead of lazily on the first request. Adapters ask the container for
    services and receive `Unavailable` until `start()` has finished.

Degradation:
    A memory store that cannot be opened does not abort startup. The container
    becomes ready without memory; memory-backed routes answer 503 and generations
    without a session still work.
"""

import logging
import threading
import time

from agenthub.agents.registry import AgentRegistry
from agenthub.config import Settings
from agenthub.core.dispatcher import GenerationDispatcher
from agenthub.errors import AgentHubError, Unavailable
from agenthub.llm.client import ProviderClient
from agenthub.memory.eternal_memory import EternalMemory
from agenthub.usage.accounting import UsageAccounting


logger = logging.getLogger(__name__)


class ServiceContainer:
    """Owns every long-lived service of the process.

    Args:
        settings: `Settings`; read from the environment when omitted.
        registry, embedder, memory, usage, provider: Optional prebuilt services.
            Anything not supplied is constructed in `start()`.
    """

    def __init__(
        self,
        settings=None,
        registry=None,
        embedder=None,
        memory=None,
        usage=None,
        provider=None,
    ):
        self.settings = settings or Settings.from_env()
        self.registry = registry
        self.embedder = embedder
        self.memory = memory
        self.usage = usage
        self.provider = provider
        self.dispatcher = None

        self._ready = threading.Event()
        self._started_at = None

    @property
    def ready(self):
        return self._ready.is_set()

    @property
    def uptime(self):
        if self._started_at is None:
            return 0.0
        return time.time() - self._started_at

    def start(self):
        """Construct and open every service, then open the readiness gate.

        Raises:
            ValueError / OSError: Invalid agent catalog. Startup cannot continue
                without a registry.
        """
        if self.ready:
            return self

        settings = self.settings

        if self.registry is None:
            self.registry = AgentRegistry.load(settings.agents_file, default_model=settings.model_name)

        if self.usage is None:
            self.usage = UsageAccounting()

        if self.provider is None:
            self.provider = ProviderClient(provider=settings.provider, timeout=settings.upstream_timeout)

        if self.memory is None:
            self.memory = self._build_memory()
        elif not self.memory.available:
            try:
                self.memory.open()
            except AgentHubError:
                logger.exception("Eternal memory failed to open; continuing without memory")

        self.dispatcher = GenerationDispatcher(
            registry=self.registry,
            provider=self.provider,
            memory=self.memory,
            usage=self.usage,
            settings=settings,
        )

        self._started_at = time.time()
        self._ready.set()
        logger.info(
            "Services ready (agents=%d, memory=%s, provider=%s)",
            len(self.registry),
            "active" if self.memory_available else "unavailable",
            settings.provider,
        )
        return self

    def _build_memory(self):
        settings = self.settings
        try:
            if self.embedder is None:
                from agenthub.memory.embedding_model import Embedder

                self.embedder = Embedder.from_name(settings.embed_model)
            memory = EternalMemory(
                self.embedder,
                data_dir=settings.memory_dir,
                backup_dir=settings.backup_dir,
                registry=self.registry,
            )
            return memory.open()
        except Exception:
            logger.exception("Eternal memory failed to start; continuing without memory")
            return None

    def stop(self):
        """Close the gate, persist the usage snapshot and close memory."""
        if not self.ready:
            return
        self._ready.clear()

        if self.usage is not None and self.settings.usage_snapshot_path:
            try:
                self.usage.save_snapshot(self.settings.usage_snapshot_path)
            except OSError:
                logger.exception("Failed to write usage snapshot")

        if self.memory is not None:
            self.memory.close()

        logger.info("Services stopped")

    # =========================================================
    # ACCESSORS (raise Unavailable before readiness)
    # =========================================================

    def require_ready(self):
        if not self.ready:
            raise Unavailable("Service is starting, try again shortly")
        return self

    @property
    def memory_available(self):
        return self.memory is not None and self.memory.available

    def require_memory(self):
        self.require_ready()
        if not self.memory_available:
            raise Unavailable("Memory system not available")
        return self.memory

    def status(self):
        """Aggregate stats of every service for the status routes."""
        return {
            "agents": self.registry.stats() if self.registry else {"status": "not_initialized"},
            "memory": self.memory.get_stats() if self.memory else {"status": "unavailable"},
            "usage": {
                "totals": self.usage.totals(),
                "agents": self.usage.get_usage_stats(),
            } if self.usage else {"status": "not_initialized"},
            "dispatcher": self.dispatcher.stats() if self.dispatcher else {"status": "not_initialized"},
        }
