"""Data contracts for the eternal memory store.

Architectural role:
    Defines the persisted `Turn` record, the context window bound passed to
    `EternalMemory.get_session_context`, and the scored `SearchHit` returned by
    semantic search.

Determinism:
    Pure data classes; `to_dict`/`from_dict` are exact inverses for the fields they
    carry, which is what the turn log and backups rely on.
"""

import uuid
from dataclasses import dataclass, field


ANONYMOUS_SESSION = "anonymous"

CHARS_PER_TOKEN_ESTIMATE = 4


def estimate_tokens(text):
    """Estimate token count with the shared 4-chars-per-token heuristic.

    Empty input returns `0`; non-empty input returns at least `1`.
    """
    if not text:
        return 0
    return max(1, len(str(text)) // CHARS_PER_TOKEN_ESTIMATE)


@dataclass(frozen=True)
class Turn:
    """One persisted user/assistant exchange.

    Attributes:
        session_id: Owning session.
        user_message: Text sent by the caller.
        assistant_response: Final assistant text (complete; partial streams are
            never persisted).
        agent_id: Agent that produced the response; must resolve in the registry.
        timestamp: Unix seconds, strictly increasing within the session. `None`
            on input means "assign on write".
        metadata: Cost, model id and deep-thinking/streaming flags.
        sequence: 0-based position within the session, assigned on write.
        turn_id: Unique id, assigned on write when missing.
    """

    session_id: str
    user_message: str
    assistant_response: str
    agent_id: str
    timestamp: float | None = None
    metadata: dict = field(default_factory=dict)
    sequence: int | None = None
    turn_id: str | None = None

    @property
    def text(self):
        """Retrievable text unit indexed for semantic search."""
        return f"{self.user_message}\n{self.assistant_response}".strip()

    def token_estimate(self):
        return estimate_tokens(self.user_message) + estimate_tokens(self.assistant_response)

    def to_dict(self):
        return {
            "turnId": self.turn_id,
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "agentId": self.agent_id,
            "userMessage": self.user_message,
            "assistantResponse": self.assistant_response,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            session_id=data["sessionId"],
            user_message=data.get("userMessage", ""),
            assistant_response=data.get("assistantResponse", ""),
            agent_id=data["agentId"],
            timestamp=data.get("timestamp"),
            metadata=dict(data.get("metadata") or {}),
            sequence=data.get("sequence"),
            turn_id=data.get("turnId") or uuid.uuid4().hex,
        )


@dataclass(frozen=True)
class ContextWindow:
    """Bound for a session context fetch.

    Either bound may be `None` (unbounded on that axis). When both are set the
    window is the longest suffix satisfying both.
    """

    max_turns: int | None = 10
    max_tokens: int | None = None

    def __post_init__(self):
        if self.max_turns is not None and self.max_turns < 0:
            raise ValueError("max_turns must be non-negative")
        if self.max_tokens is not None and self.max_tokens < 0:
            raise ValueError("max_tokens must be non-negative")


@dataclass(frozen=True)
class SearchHit:
    """A Turn returned by semantic search with its similarity score."""

    turn: Turn
    score: float

    def to_dict(self):
        data = self.turn.to_dict()
        data["score"] = round(self.score, 6)
        return data
