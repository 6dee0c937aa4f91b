"""Specialized agent task templates.

Each task binds a fixed agent to a prompt template with required and defaulted
fields. The dispatcher renders the template and runs a normal generation, so tasks
share validation, accounting and memory persistence with free-form prompts.
"""

from dataclasses import dataclass, field

from agenthub.errors import InvalidArgument


@dataclass(frozen=True)
class AgentTask:
    name: str
    agent_id: str
    template: str
    required: tuple = ()
    defaults: dict = field(default_factory=dict)

    def render(self, fields):
        """Fill the template, raising `InvalidArgument` for missing required fields."""
        values = dict(self.defaults)
        values.update({k: v for k, v in fields.items() if v is not None})

        missing = [
            name for name in self.required
            if values.get(name) is None or str(values[name]).strip() == ""
        ]
        if missing:
            raise InvalidArgument(f"Missing required fields: {', '.join(missing)}")

        return self.template.format(**values)


TASKS = {
    "create_hook": AgentTask(
        name="create_hook",
        agent_id="hook-master",
        required=("platform", "topic"),
        defaults={"style": "viral"},
        template=(
            "Write 5 opening hooks for a {platform} post about: {topic}.\n"
            "Style: {style}.\n"
            "Each hook must fit in one sentence and work in the first two seconds.\n"
            "Return a numbered list."
        ),
    ),
    "analyze_trend": AgentTask(
        name="analyze_trend",
        agent_id="trend-researcher",
        required=("topic",),
        defaults={"timeframe": "7 days"},
        template=(
            "Analyze the trend '{topic}' over the last {timeframe}.\n"
            "Explain what drives it, who is participating, how long it is likely to "
            "last and how a creator can take part."
        ),
    ),
    "optimize_content": AgentTask(
        name="optimize_content",
        agent_id="content-optimizer",
        required=("content",),
        defaults={"metrics": "not provided", "goal": "engagement"},
        template=(
            "Optimize the following content for {goal}.\n\n"
            "Content:\n{content}\n\n"
            "Current metrics: {metrics}\n\n"
            "Return the improved version followed by a short list of changes."
        ),
    ),
    "design_thumbnail": AgentTask(
        name="design_thumbnail",
        agent_id="thumbnail-designer",
        required=("video_title",),
        defaults={"target_audience": "general audience", "platform": "youtube"},
        template=(
            "Design 3 thumbnail concepts for the {platform} video '{video_title}' "
            "aimed at {target_audience}.\n"
            "For each concept describe layout, colors, text overlay and expression."
        ),
    ),
    "interpret_command": AgentTask(
        name="interpret_command",
        agent_id="flowi-ceo",
        required=("command",),
        template=(
            "Interpret this terminal command and describe the action to execute: "
            "\"{command}\""
        ),
    ),
}


def get_task(name):
    task = TASKS.get(name)
    if task is None:
        raise InvalidArgument(f"Unknown task '{name}'")
    return task
