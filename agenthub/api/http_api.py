"""
HTTP API adapter for agenthub.

Architectural role:
- Expose the agent, terminal, memory and task routes over FastAPI.
- Parse request bodies into pydantic models and hand them to the dispatcher.
- Map typed `AgentHubError`s to `{error}` JSON responses with their status code.
- Format streaming generations as server-sent events.

Startup:
- Services are built once in the lifespan handler (`ServiceContainer.start`).
- Until that finishes every service-backed route answers 503.

Endpoint groups:
- `GET /health`, `GET /status`: liveness and aggregated stats.
- `/api/agents/...`: catalog, sync and streaming generation per agent.
- `/api/terminal/...`: session-aware chat, natural-language commands, status,
  memory backup and restore.
- `/api/memory/...`: session context fetch and semantic search.
- `/api/hooks|trends|content|thumbnails/...`: specialized agent tasks.

Input validation behavior:
- Unknown body fields (including unknown generation options) -> HTTP 400.
- Missing prompt/message -> HTTP 400.
- Unknown agent -> HTTP 404.
- Memory store not open -> HTTP 503.

Response formatting:
- Non-stream routes return JSON objects (`{content, cost, model, ...}` for
  generations).
- Stream routes return `text/event-stream` frames `data: <json>\\n\\n` with
  `{type: "content"|"reasoning"|"error", ...}`; a completed stream ends with
  `data: [DONE]\\n\\n`, a failed one with a single error frame.

Side effects:
- Emits request/response debug logs only when `DEBUG == "true"`.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agenthub.config import Settings
from agenthub.core.services import ServiceContainer
from agenthub.core.types import CHUNK_DONE, GenerationOptions
from agenthub.errors import AgentHubError, InternalError, InvalidArgument, Unavailable
from agenthub.memory.models import ContextWindow


logger = logging.getLogger(__name__)

VERSION = "1.0.0"

DEFAULT_TERMINAL_AGENT = "flowi-ceo"

FEATURES = ["Deep Thinking", "Multimodal", "Streaming", "Cost Optimized"]


def _now():
    return datetime.now(timezone.utc).isoformat()


# ============================================================
# Request Schemas
# ============================================================

class ApiModel(BaseModel):
    """Base for request bodies: camelCase or snake_case keys, no unknown fields."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class GenerateRequest(ApiModel):
    prompt: str | None = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class TerminalChatRequest(ApiModel):
    message: str | None = None
    session_id: str | None = Field(default=None, min_length=1, max_length=256)
    agent_id: str = DEFAULT_TERMINAL_AGENT
    options: GenerationOptions = Field(default_factory=GenerationOptions)

    def merged_options(self):
        """Top-level `sessionId` wins over `options.sessionId`."""
        if self.session_id:
            return self.options.model_copy(update={"session_id": self.session_id})
        return self.options


class CommandRequest(ApiModel):
    command: str | None = None
    session_id: str | None = Field(default=None, min_length=1, max_length=256)


class SearchRequest(ApiModel):
    query: str | None = None
    limit: int = 10


class HookRequest(ApiModel):
    platform: str | None = None
    topic: str | None = None
    style: str = "viral"


class TrendRequest(ApiModel):
    topic: str | None = None
    timeframe: str = "7 days"


class OptimizeRequest(ApiModel):
    content: str | None = None
    metrics: dict | str | None = None
    goal: str = "engagement"


class ThumbnailRequest(ApiModel):
    video_title: str | None = None
    target_audience: str | None = None
    platform: str = "youtube"


# ============================================================
# Service Access
# ============================================================

def get_services(request: Request) -> ServiceContainer:
    """Return the ready service container or raise `Unavailable` (503)."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise Unavailable("Service is starting, try again shortly")
    return services.require_ready()


# ============================================================
# SSE Formatting
# ============================================================

def sse_frame(payload) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


SSE_DONE = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def event_stream(request: Request, handle, debug=False):
    """
    Relay multiplexer chunks as SSE frames.

    Side effects:
    - Checks client connection state after every chunk and cancels the
      generation on disconnect.
    - Closes the chunk iterator on every exit path, which releases the upstream
      connection.
    """
    events = handle.events()
    try:
        async for chunk in events:
            if await request.is_disconnected():
                logger.info("Client disconnected during stream %s", handle.label)
                handle.cancel()
                return

            if chunk.type == CHUNK_DONE:
                yield SSE_DONE
                return

            if debug:
                logger.debug("Streaming chunk: %r", chunk)
            yield sse_frame(chunk.to_dict())
    finally:
        await events.aclose()


def streaming_response(request: Request, handle, debug=False):
    return StreamingResponse(
        event_stream(request, handle, debug=debug),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ============================================================
# App Factory
# ============================================================

def create_app(services: ServiceContainer | None = None, settings=None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Prebuilt container (tests); built from `settings` or the
            environment when omitted.
        settings: `Settings` used when `services` is omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container = app.state.services
        if container is None:
            container = ServiceContainer(settings=settings)
            app.state.services = container
        await asyncio.to_thread(container.start)
        try:
            yield
        finally:
            await asyncio.to_thread(container.stop)

    app = FastAPI(title="agenthub", version=VERSION, lifespan=lifespan)
    app.state.services = services

    if settings is None:
        settings = services.settings if services is not None else Settings.from_env()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
        allow_credentials=True,
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI):

    @app.exception_handler(AgentHubError)
    async def agenthub_error_handler(request: Request, exc: AgentHubError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = InternalError("Internal server error")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _register_routes(app: FastAPI):

    # ============================================================
    # Health / Status
    # ============================================================

    @app.get("/health")
    async def health(request: Request):
        services = request.app.state.services
        ready = services is not None and services.ready

        def state(ok):
            return "active" if ok else ("initializing" if not ready else "unavailable")

        return {
            "status": "healthy" if ready else "starting",
            "timestamp": _now(),
            "services": {
                "agents": state(ready and services.registry is not None),
                "memory": state(ready and services.memory_available),
                "provider": state(ready and services.provider is not None),
            },
            "provider": services.settings.provider if services else None,
            "model": services.settings.model_name if services else None,
            "version": VERSION,
        }

    @app.get("/status")
    async def status(services: ServiceContainer = Depends(get_services)):
        return {
            "system": "agenthub",
            "status": "operational",
            **services.status(),
            "timestamp": _now(),
        }

    # ============================================================
    # Agents
    # ============================================================

    @app.get("/api/agents")
    async def list_agents(services: ServiceContainer = Depends(get_services)):
        agents = [agent.to_dict() for agent in services.registry.list()]
        return {
            "agents": agents,
            "total": len(agents),
            "provider": services.settings.provider,
            "model": services.settings.model_name,
            "features": FEATURES,
        }

    @app.get("/api/agents/{agent_id}")
    async def agent_detail(agent_id: str, services: ServiceContainer = Depends(get_services)):
        agent = services.registry.get(agent_id)
        return {
            "agent": agent.to_dict(),
            "capabilities": agent.capabilities.to_dict(),
            "pricing": agent.pricing.to_dict() if agent.pricing else None,
        }

    @app.post("/api/agents/{agent_id}/generate")
    async def agent_generate(
        agent_id: str,
        body: GenerateRequest,
        services: ServiceContainer = Depends(get_services),
    ):
        if services.settings.debug:
            logger.debug("Generate request for %s: %s", agent_id, body)
        result = await services.dispatcher.generate(agent_id, body.prompt, body.options)
        return result.to_dict()

    @app.post("/api/agents/{agent_id}/stream")
    async def agent_stream(
        agent_id: str,
        body: GenerateRequest,
        request: Request,
        services: ServiceContainer = Depends(get_services),
    ):
        handle = await services.dispatcher.stream(agent_id, body.prompt, body.options)
        return streaming_response(request, handle, debug=services.settings.debug)

    # ============================================================
    # Terminal
    # ============================================================

    @app.post("/api/terminal/chat")
    async def terminal_chat(body: TerminalChatRequest, services: ServiceContainer = Depends(get_services)):
        if not body.message or not body.message.strip():
            raise InvalidArgument("Message is required")

        result = await services.dispatcher.generate(body.agent_id, body.message, body.merged_options())
        data = result.to_dict()
        data["sessionId"] = body.session_id or body.options.session_id
        data["memoryActive"] = services.memory_available
        return data

    @app.post("/api/terminal/chat/stream")
    async def terminal_chat_stream(
        body: TerminalChatRequest,
        request: Request,
        services: ServiceContainer = Depends(get_services),
    ):
        if not body.message or not body.message.strip():
            raise InvalidArgument("Message is required")

        handle = await services.dispatcher.stream(body.agent_id, body.message, body.merged_options())
        return streaming_response(request, handle, debug=services.settings.debug)

    @app.post("/api/terminal/command")
    async def terminal_command(body: CommandRequest, services: ServiceContainer = Depends(get_services)):
        options = GenerationOptions(session_id=body.session_id)
        result = await services.dispatcher.run_task(
            "interpret_command", {"command": body.command}, options
        )
        return {
            "command": body.command,
            "interpretation": result.content,
            "model": result.model,
            "cost": result.cost,
            "executed": True,
            "timestamp": _now(),
        }

    @app.get("/api/terminal/status")
    async def terminal_status(services: ServiceContainer = Depends(get_services)):
        return {
            "system": "agenthub terminal",
            "status": "operational",
            **services.status(),
            "uptime": f"{int(services.uptime)}s",
            "timestamp": _now(),
        }

    @app.post("/api/terminal/backup")
    async def terminal_backup(services: ServiceContainer = Depends(get_services)):
        memory = services.require_memory()
        backup = await asyncio.to_thread(memory.create_backup)
        return {
            "backup": backup,
            "message": "Backup created successfully",
            "timestamp": _now(),
        }

    @app.post("/api/terminal/restore")
    async def terminal_restore(
        backup: dict = Body(...),
        services: ServiceContainer = Depends(get_services),
    ):
        memory = services.require_memory()
        restored = await asyncio.to_thread(memory.load_backup, backup)
        return {
            "restored": restored,
            "message": "Backup restored successfully",
            "timestamp": _now(),
        }

    # ============================================================
    # Memory
    # ============================================================

    @app.get("/api/memory/sessions/{session_id}")
    async def memory_session(
        session_id: str,
        turns: int | None = None,
        tokens: int | None = None,
        services: ServiceContainer = Depends(get_services),
    ):
        memory = services.require_memory()
        try:
            window = ContextWindow(
                max_turns=services.settings.context_max_turns if turns is None else turns,
                max_tokens=tokens,
            )
        except ValueError as err:
            raise InvalidArgument(str(err))

        context = await asyncio.to_thread(memory.get_session_context, session_id, window)
        return {
            "sessionId": session_id,
            "context": [turn.to_dict() for turn in context],
            "count": len(context),
            "timestamp": _now(),
        }

    @app.post("/api/memory/search")
    async def memory_search(body: SearchRequest, services: ServiceContainer = Depends(get_services)):
        memory = services.require_memory()
        hits = await asyncio.to_thread(memory.semantic_search, body.query, body.limit)
        return {
            "query": body.query,
            "results": [hit.to_dict() for hit in hits],
            "count": len(hits),
            "timestamp": _now(),
        }

    # ============================================================
    # Specialized Agent Tasks
    # ============================================================

    @app.post("/api/hooks/create")
    async def create_hook(body: HookRequest, services: ServiceContainer = Depends(get_services)):
        result = await services.dispatcher.run_task("create_hook", body.model_dump())
        return result.to_dict()

    @app.post("/api/trends/analyze")
    async def analyze_trend(body: TrendRequest, services: ServiceContainer = Depends(get_services)):
        result = await services.dispatcher.run_task("analyze_trend", body.model_dump())
        return result.to_dict()

    @app.post("/api/content/optimize")
    async def optimize_content(body: OptimizeRequest, services: ServiceContainer = Depends(get_services)):
        fields = body.model_dump()
        if isinstance(fields.get("metrics"), dict):
            fields["metrics"] = json.dumps(fields["metrics"], ensure_ascii=False)
        result = await services.dispatcher.run_task("optimize_content", fields)
        return result.to_dict()

    @app.post("/api/thumbnails/design")
    async def design_thumbnail(body: ThumbnailRequest, services: ServiceContainer = Depends(get_services)):
        result = await services.dispatcher.run_task("design_thumbnail", body.model_dump())
        return result.to_dict()


app = create_app()
