"""Error taxonomy shared by the core and the API adapters.

Architectural role:
    Every failure that crosses a component boundary is one of the classes below.
    The HTTP layer maps them to status codes through `status_code`; the core never
    imports FastAPI.

Mapping:
    - `InvalidArgument` -> 400 (user-correctable input problems).
    - `NotFound`        -> 404 (unknown agent/session/resource).
    - `Unavailable`     -> 503 (dependent subsystem not ready or unreachable).
    - `UpstreamError`   -> 500 (provider failure, sanitized message).
    - `InternalError`   -> 500 (unexpected, logged with full context).
"""


class AgentHubError(Exception):
    """Base class for all typed errors raised by agenthub."""

    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Return the JSON error envelope used by the HTTP boundary."""
        return {"error": self.message}


class InvalidArgument(AgentHubError):
    status_code = 400


class NotFound(AgentHubError):
    status_code = 404


class Unavailable(AgentHubError):
    """A dependent subsystem is not ready or cannot be reached.

    Callers treat this as service degradation and may retry later.
    """

    status_code = 503


class UpstreamError(AgentHubError):
    """The upstream generation provider failed.

    Attributes:
        provider: Provider label used in the sanitized message.
        status_code_upstream: HTTP status returned by the provider, if any.
        transient: Whether the failure is eligible for the bounded retry
            (network errors, timeouts, HTTP 429 and 5xx).
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        provider: str = "provider",
        status_code_upstream: int | None = None,
        transient: bool = False,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.status_code_upstream = status_code_upstream
        self.transient = transient


class InternalError(AgentHubError):
    status_code = 500
