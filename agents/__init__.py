from .router import (
    AgentProfile,
    RoutingDecision,
    TaskRouter,
    generate_keywords,
    parse_agent_markdown,
)
from .runtime import (
    AgentBackend,
    AgentRequest,
    AgentStatus,
    AgentUpdate,
    SubprocessAgentBackend,
)
from .feedback import (
    CallbackFeedbackChannel,
    FeedbackChannel,
    FeedbackRequest,
    QueueFeedbackChannel,
    console_prompt,
)

__all__ = [
    "AgentProfile",
    "RoutingDecision",
    "TaskRouter",
    "generate_keywords",
    "parse_agent_markdown",
    "AgentBackend",
    "AgentRequest",
    "AgentStatus",
    "AgentUpdate",
    "SubprocessAgentBackend",
    "CallbackFeedbackChannel",
    "FeedbackChannel",
    "FeedbackRequest",
    "QueueFeedbackChannel",
    "console_prompt",
]
