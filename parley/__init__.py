"""parley: a terminal assistant that drives tool calls for a language model."""

from .errors import AgentError, CompletionRequestError, ConfigError, ToolExecutionError
from .messages import TurnResult
from .session import Session

__all__ = [
    "AgentError",
    "CompletionRequestError",
    "ConfigError",
    "Session",
    "ToolExecutionError",
    "TurnResult",
]
