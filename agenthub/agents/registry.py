"""Read-only registry of agent personas.

Architectural role:
    Resolves a symbolic agent id (for example `flowi-ceo`) to its model binding,
    capability flags and pricing. The dispatcher consults it before every upstream
    call and the memory store consults it before every Turn write.

Load behavior:
    - `AgentRegistry.load(path, default_model)` reads a JSON catalog when a path is
      given, otherwise uses `BUILTIN_AGENTS`.
    - Every entry is validated once at load time; a malformed catalog aborts startup
      with `ValueError` instead of failing later at a use site.

Concurrency:
    The registry is immutable after construction. Lookups take no lock.
"""

import json
import logging
from dataclasses import dataclass, field

from agenthub.errors import NotFound


logger = logging.getLogger(__name__)


PRICING_UNITS = ("per_1k_tokens", "per_request")
CAPABILITY_FLAGS = ("deep_thinking", "multimodal", "streaming")


@dataclass(frozen=True)
class Capabilities:
    """Fixed capability flags of an agent.

    Attributes:
        deep_thinking: Agent may run with provider-side reasoning enabled.
        multimodal: Agent accepts non-text inputs upstream.
        streaming: Agent may be used with the streaming routes.
        languages: Supported response languages (ISO codes).
    """

    deep_thinking: bool = False
    multimodal: bool = False
    streaming: bool = True
    languages: tuple = ("es", "en")

    def to_dict(self):
        return {
            "deepThinking": self.deep_thinking,
            "multimodal": self.multimodal,
            "streaming": self.streaming,
            "languages": list(self.languages),
        }


@dataclass(frozen=True)
class Pricing:
    """Cost descriptor. `rate` is USD per `unit`."""

    unit: str = "per_1k_tokens"
    rate: float = 0.0

    def to_dict(self):
        return {"unit": self.unit, "rate": self.rate}


@dataclass(frozen=True)
class Agent:
    """One persona bound to a model configuration."""

    id: str
    name: str
    model: str
    description: str = ""
    role: str = ""
    capabilities: Capabilities = field(default_factory=Capabilities)
    pricing: Pricing | None = None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "model": self.model,
            "capabilities": self.capabilities.to_dict(),
            "pricing": self.pricing.to_dict() if self.pricing else None,
        }


# Built-in catalog used when no AGENTS_FILE is configured. `model` is filled in
# from settings when omitted.
BUILTIN_AGENTS = [
    {
        "id": "flowi-ceo",
        "name": "FLOWI CEO",
        "description": "Strategic lead that coordinates the other agents and the admin terminal.",
        "role": (
            "You are FLOWI, the CEO agent of Flowmatik. You think strategically, "
            "answer decisively and turn requests into concrete next steps."
        ),
        "capabilities": {"deep_thinking": True, "multimodal": True, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0008},
    },
    {
        "id": "trend-researcher",
        "name": "Trend Researcher",
        "description": "Finds and explains emerging social media trends.",
        "role": (
            "You are a trend researcher. You identify emerging topics, explain why "
            "they are growing and estimate how long they will last."
        ),
        "capabilities": {"deep_thinking": True, "multimodal": True, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0008},
    },
    {
        "id": "hook-master",
        "name": "Hook Master",
        "description": "Writes scroll-stopping opening hooks for short-form content.",
        "role": (
            "You are a hook specialist. You write short, punchy openings that make "
            "people stop scrolling in the first two seconds."
        ),
        "capabilities": {"deep_thinking": False, "multimodal": False, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0005},
    },
    {
        "id": "content-optimizer",
        "name": "Content Optimizer",
        "description": "Rewrites content against engagement metrics and goals.",
        "role": (
            "You are a content optimizer. You read performance metrics and rewrite "
            "content so it reaches the stated goal."
        ),
        "capabilities": {"deep_thinking": True, "multimodal": False, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0008},
    },
    {
        "id": "thumbnail-designer",
        "name": "Thumbnail Designer",
        "description": "Designs thumbnail concepts for video titles.",
        "role": (
            "You are a thumbnail art director. You describe thumbnail concepts with "
            "layout, colors, text overlay and facial expression."
        ),
        "capabilities": {"deep_thinking": False, "multimodal": True, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0005},
    },
    {
        "id": "script-writer",
        "name": "Script Writer",
        "description": "Drafts video and podcast scripts.",
        "role": (
            "You are a script writer for short and long-form video. You write clear "
            "scripts with timing cues."
        ),
        "capabilities": {"deep_thinking": False, "multimodal": False, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0005},
    },
    {
        "id": "community-manager",
        "name": "Community Manager",
        "description": "Drafts replies and engagement plans for audiences.",
        "role": (
            "You are a community manager. You answer followers warmly and plan "
            "engagement actions."
        ),
        "capabilities": {"deep_thinking": False, "multimodal": False, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0005},
    },
    {
        "id": "analytics-expert",
        "name": "Analytics Expert",
        "description": "Interprets channel analytics and recommends actions.",
        "role": (
            "You are an analytics expert. You interpret numbers precisely and never "
            "invent data that was not provided."
        ),
        "capabilities": {"deep_thinking": True, "multimodal": False, "streaming": True},
        "pricing": {"unit": "per_1k_tokens", "rate": 0.0008},
    },
]


def _parse_capabilities(agent_id, raw):
    if raw is None:
        return Capabilities()
    if not isinstance(raw, dict):
        raise ValueError(f"Agent {agent_id!r}: capabilities must be an object")

    unknown = set(raw) - set(CAPABILITY_FLAGS) - {"languages"}
    if unknown:
        raise ValueError(f"Agent {agent_id!r}: unknown capability flags {sorted(unknown)}")

    flags = {}
    for name in CAPABILITY_FLAGS:
        value = raw.get(name, getattr(Capabilities, name))
        if not isinstance(value, bool):
            raise ValueError(f"Agent {agent_id!r}: capability {name!r} must be a boolean")
        flags[name] = value

    languages = raw.get("languages", Capabilities.languages)
    if (
        not isinstance(languages, (list, tuple))
        or not languages
        or not all(isinstance(lang, str) and lang for lang in languages)
    ):
        raise ValueError(f"Agent {agent_id!r}: languages must be a non-empty list of strings")

    return Capabilities(languages=tuple(languages), **flags)


def _parse_pricing(agent_id, raw):
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError(f"Agent {agent_id!r}: pricing must be an object")

    unit = raw.get("unit", "per_1k_tokens")
    if unit not in PRICING_UNITS:
        raise ValueError(f"Agent {agent_id!r}: unknown pricing unit {unit!r}")

    rate = raw.get("rate")
    if isinstance(rate, bool) or not isinstance(rate, (int, float)) or rate < 0:
        raise ValueError(f"Agent {agent_id!r}: pricing rate must be a non-negative number")

    return Pricing(unit=unit, rate=float(rate))


def parse_agent(raw, default_model):
    """Validate one catalog entry and build an immutable `Agent`.

    Args:
        raw: Catalog entry dictionary.
        default_model: Model id used when the entry does not name one.

    Returns:
        The validated `Agent`.

    Raises:
        ValueError: On any missing or malformed field.
    """
    if not isinstance(raw, dict):
        raise ValueError("Agent entries must be objects")

    agent_id = raw.get("id")
    if not isinstance(agent_id, str) or not agent_id.strip():
        raise ValueError("Agent entry is missing a non-empty 'id'")

    model = raw.get("model") or default_model
    if not isinstance(model, str) or not model.strip():
        raise ValueError(f"Agent {agent_id!r}: model must be a non-empty string")

    return Agent(
        id=agent_id.strip(),
        name=str(raw.get("name") or agent_id),
        model=model.strip(),
        description=str(raw.get("description", "")),
        role=str(raw.get("role", "")),
        capabilities=_parse_capabilities(agent_id, raw.get("capabilities")),
        pricing=_parse_pricing(agent_id, raw.get("pricing")),
    )


class AgentRegistry:
    """Immutable, ordered mapping from agent id to `Agent`."""

    def __init__(self, agents):
        ordered = {}
        for agent in agents:
            if agent.id in ordered:
                raise ValueError(f"Duplicate agent id {agent.id!r}")
            ordered[agent.id] = agent
        if not ordered:
            raise ValueError("Agent registry cannot be empty")
        self._agents = ordered

    @classmethod
    def from_entries(cls, entries, default_model):
        return cls(parse_agent(entry, default_model) for entry in entries)

    @classmethod
    def load(cls, path=None, default_model="doubao-1.5-pro-32k"):
        """Load the registry from a JSON catalog file or the built-in catalog.

        Args:
            path: Optional path to a JSON list (or `{"agents": [...]}`) of entries.
            default_model: Model id for entries without an explicit `model`.

        Returns:
            A validated `AgentRegistry`.

        Failure modes:
            - Unreadable file or invalid JSON raises the underlying `OSError` /
              `json.JSONDecodeError`.
            - Invalid entries raise `ValueError`.
        """
        if path:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            entries = data.get("agents") if isinstance(data, dict) else data
            if not isinstance(entries, list):
                raise ValueError(f"{path}: expected a list of agents")
            source = path
        else:
            entries = BUILTIN_AGENTS
            source = "builtin"

        registry = cls.from_entries(entries, default_model)
        logger.info("Loaded %d agents from %s", len(registry), source)
        return registry

    def __len__(self):
        return len(self._agents)

    def __contains__(self, agent_id):
        return agent_id in self._agents

    def list(self):
        """Return all agents in catalog order."""
        return list(self._agents.values())

    def get(self, agent_id):
        """Return the agent for `agent_id` or raise `NotFound`."""
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFound(f"Agent '{agent_id}' not found")
        return agent

    def stats(self):
        agents = self.list()
        return {
            "total": len(agents),
            "deepThinking": sum(1 for a in agents if a.capabilities.deep_thinking),
            "multimodal": sum(1 for a in agents if a.capabilities.multimodal),
            "streaming": sum(1 for a in agents if a.capabilities.streaming),
            "models": sorted({a.model for a in agents}),
        }
