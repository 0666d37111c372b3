"""Exception types shared across parley."""


class AgentError(Exception):
    """Raised by the turn driver or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class CompletionRequestError(AgentError):
    """Raised when a request to the completion service fails.

    Never retried: the current turn ends and the operator sees the message.
    """


class ToolExecutionError(Exception):
    """Raised inside a tool handler. ToolRegistry.execute turns it into text."""
