"""Conversation data model: messages, tool calls, tool definitions, turn results.

Messages are plain dicts in the chat-completions shape. Assistant messages that
request tools carry a list of ToolCall objects under "tool_calls"; the
completion adapter serializes them back to wire format.
"""

from dataclasses import dataclass, field


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    raw_arguments: str = "{}"
    parse_error: str | None = None


@dataclass(frozen=True)
class ToolDefinition:
    """Name, description and JSON-Schema parameters for one tool."""

    name: str
    description: str
    parameters: dict

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class Completion:
    """Parsed reply from the completion service."""

    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class TurnResult:
    """Outcome of one operator turn.

    messages is the full history after the turn (prior messages, the user
    message, tool-call/tool-result pairs, final assistant message).
    outcome is "done", "finished" or "max_depth".
    """

    messages: list[dict]
    outcome: str
    answer: str
    depth: int = 0

    @property
    def reached_max_depth(self) -> bool:
        return self.outcome == "max_depth"


def user_message(content: str) -> dict:
    return {"role": "user", "content": content}


def assistant_message(content: str | None, tool_calls: list[ToolCall] | None = None) -> dict:
    msg: dict = {"role": "assistant", "content": content}
    if tool_calls:
        msg["tool_calls"] = list(tool_calls)
    return msg


def tool_message(tool_call_id: str, content: str) -> dict:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


def rendered_messages(messages: list[dict]) -> list[dict]:
    """Return the messages an operator sees: user input and final answers.

    Tool results and assistant messages that only carry tool calls are part of
    the history sent to the model but are not shown again.
    """
    shown = []
    for msg in messages:
        role = msg.get("role")
        if role == "user":
            shown.append(msg)
        elif role == "assistant" and not msg.get("tool_calls"):
            shown.append(msg)
    return shown
