"""Data contracts shared by the dispatcher, the multiplexer and the API layer.

Architectural role:
    - `GenerationOptions`: the only recognized per-request options. Unknown fields
      are rejected (pydantic `extra="forbid"`) so nothing untyped reaches the
      provider payload.
    - `GenerationResult`: the non-streaming outcome.
    - `Chunk`: one unit of a streaming response.

Determinism:
    The classes are purely structural.
"""

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GenerationOptions(BaseModel):
    """Recognized generation options with their defaults.

    Accepts both camelCase (`sessionId`) and snake_case (`session_id`) keys.

    Attributes:
        session_id: Session whose context is merged and under which the Turn is
            stored. Absent means no context merge and storage under `anonymous`.
        deep_thinking: Ask the provider for reasoning output.
        streaming: Informational flag recorded in Turn metadata.
        context_turns: Override for the context window turn bound.
        context_tokens: Override for the context window token bound.
        temperature: Sampling temperature override.
        max_tokens: Completion length cap sent upstream.
        persist: Store the completed exchange in eternal memory.
    """

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    session_id: str | None = Field(default=None, min_length=1, max_length=256)
    deep_thinking: bool = False
    streaming: bool = False
    context_turns: int | None = Field(default=None, ge=0, le=100)
    context_tokens: int | None = Field(default=None, ge=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    persist: bool = True


@dataclass
class GenerationResult:
    """Outcome of a completed non-streaming generation.

    Attributes:
        content: Assistant text.
        model: The resolved agent's configured model id.
        cost: Non-negative cost, or `None` when the agent has no pricing.
        reasoning: Provider reasoning text for deep-thinking requests.
        agent_id: Agent that served the request.
        session_id: Session the Turn was stored under (if persisted).
        usage: Provider token usage, when reported.
        memory_persisted: Whether the Turn reached eternal memory.
    """

    content: str
    model: str
    cost: float | None = None
    reasoning: str | None = None
    agent_id: str = ""
    session_id: str | None = None
    usage: dict | None = None
    memory_persisted: bool = False

    def to_dict(self):
        data = {
            "content": self.content,
            "cost": self.cost,
            "model": self.model,
            "agentId": self.agent_id,
            "memoryPersisted": self.memory_persisted,
        }
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.usage:
            data["usage"] = self.usage
        if self.session_id:
            data["sessionId"] = self.session_id
        return data


CHUNK_CONTENT = "content"
CHUNK_REASONING = "reasoning"
CHUNK_ERROR = "error"
CHUNK_DONE = "done"


@dataclass(frozen=True)
class Chunk:
    """One streaming unit. `done` is the completion sentinel."""

    type: str
    content: str | None = None
    error: str | None = None

    def to_dict(self):
        data = {"type": self.type}
        if self.content is not None:
            data["content"] = self.content
        if self.error is not None:
            data["error"] = self.error
        return data
