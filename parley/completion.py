"""Completion service adapter: provider selection and request/reply translation.

Providers are a closed set of variants, picked by an explicit prefix on the
model id ("anthropic:claude-3-5-sonnet-20241022"). A bare model id is an
OpenAI model. Requests go through LiteLLM.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import ClassVar

from .errors import CompletionRequestError, ConfigError
from .messages import Completion, ToolCall, ToolDefinition

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openai"


@dataclass(frozen=True)
class OpenAIProvider:
    api_key: str | None = None
    base_url: str | None = None

    name: ClassVar[str] = "openai"
    api_key_env: ClassVar[str] = "OPENAI_API_KEY"

    def completion_kwargs(self, model: str) -> dict:
        kwargs = {"model": f"openai/{model}", "api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs


@dataclass(frozen=True)
class AnthropicProvider:
    api_key: str | None = None
    base_url: str | None = None

    name: ClassVar[str] = "anthropic"
    api_key_env: ClassVar[str] = "ANTHROPIC_API_KEY"

    def completion_kwargs(self, model: str) -> dict:
        kwargs = {"model": f"anthropic/{model}", "api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs


@dataclass(frozen=True)
class CustomProvider:
    """Any OpenAI-compatible endpoint (vLLM, Ollama, LM Studio, a proxy...)."""

    base_url: str
    api_key: str | None = None

    name: ClassVar[str] = "custom"
    api_key_env: ClassVar[str] = "PARLEY_CUSTOM_API_KEY"

    def completion_kwargs(self, model: str) -> dict:
        return {
            "model": f"openai/{model}",
            "api_base": self.base_url,
            # OpenAI-compatible servers often ignore the key but litellm wants one
            "api_key": self.api_key or "not-needed",
        }


Provider = OpenAIProvider | AnthropicProvider | CustomProvider

PROVIDERS: dict[str, type] = {
    OpenAIProvider.name: OpenAIProvider,
    AnthropicProvider.name: AnthropicProvider,
    CustomProvider.name: CustomProvider,
}


def split_model_spec(model_spec: str) -> tuple[str, str]:
    """Split "provider:model" into its parts.

    A bare id, or one whose prefix is not a provider name (OpenAI fine-tunes
    look like "ft:gpt-4o-mini:org::id"), belongs to OpenAI.
    """
    if ":" in model_spec:
        prefix, model = model_spec.split(":", 1)
        prefix = prefix.strip().lower()
        if prefix in PROVIDERS:
            return prefix, model.strip()
    return DEFAULT_PROVIDER, model_spec.strip()


def resolve_provider(
    model_spec: str,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
) -> tuple[Provider, str]:
    """Return the provider variant and bare model id for a model spec.

    Credentials come from api_key when given, else from the provider's
    environment variable.
    """
    name, model = split_model_spec(model_spec)
    provider_cls = PROVIDERS[name]
    if not model:
        raise ConfigError(f"model {model_spec!r} has no model id after the provider prefix")

    key = api_key or os.environ.get(provider_cls.api_key_env)
    if provider_cls is CustomProvider:
        if not base_url:
            raise ConfigError("--base-url is required for the custom provider")
        return CustomProvider(base_url=base_url, api_key=key), model
    return provider_cls(api_key=key, base_url=base_url), model


# ---------------------------------------------------------------------------
# Request / reply translation
# ---------------------------------------------------------------------------


def _call_to_wire(tc) -> dict:
    if isinstance(tc, dict):
        return tc
    return {
        "id": tc.id,
        "type": "function",
        "function": {"name": tc.name, "arguments": tc.raw_arguments},
    }


def to_wire(system_prompt: str | None, messages: list[dict]) -> list[dict]:
    """Serialize the system prompt and history into chat-completions messages.

    History order is kept exactly; nothing is dropped.
    """
    wire: list[dict] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})
    for msg in messages:
        role = msg["role"]
        tool_calls = msg.get("tool_calls")
        content = msg.get("content")
        out: dict = {"role": role}
        if tool_calls:
            out["content"] = content
            out["tool_calls"] = [_call_to_wire(tc) for tc in tool_calls]
        else:
            out["content"] = content if content is not None else ""
        if role == "tool":
            out["tool_call_id"] = msg["tool_call_id"]
        wire.append(out)
    return wire


def parse_arguments(raw) -> tuple[dict, str | None]:
    """Parse tool-call argument text. Returns (arguments, error)."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        return {}, str(e)
    if not isinstance(parsed, dict):
        return {}, f"expected a JSON object, got {type(parsed).__name__}"
    return parsed, None


def parse_reply(message, finish_reason: str | None = None) -> Completion:
    """Turn a LiteLLM response message into a Completion."""
    calls: list[ToolCall] = []
    seen: set[str] = set()
    for tc in getattr(message, "tool_calls", None) or []:
        fn = tc.function
        raw = fn.arguments
        arguments, error = parse_arguments(raw)
        call_id = getattr(tc, "id", None) or f"call_{uuid.uuid4().hex[:24]}"
        if call_id in seen:
            logger.warning("Duplicate tool call id %s in one reply", call_id)
        seen.add(call_id)
        calls.append(
            ToolCall(
                id=call_id,
                name=fn.name,
                arguments=arguments,
                raw_arguments=raw if isinstance(raw, str) else json.dumps(raw or {}),
                parse_error=error,
            )
        )
    return Completion(
        content=getattr(message, "content", None),
        tool_calls=calls,
        finish_reason=finish_reason,
    )


def complete(
    system_prompt: str | None,
    messages: list[dict],
    tool_definitions: list[ToolDefinition],
    model_id: str,
    max_tokens: int,
    *,
    provider: Provider,
) -> Completion:
    """Send one request to the completion service. No retry on failure."""
    import litellm

    litellm.suppress_debug_info = True

    request = dict(
        messages=to_wire(system_prompt, messages),
        max_tokens=max_tokens,
        **provider.completion_kwargs(model_id),
    )
    if tool_definitions:
        request["tools"] = [d.schema() for d in tool_definitions]
        request["tool_choice"] = "auto"

    logger.info(
        "Requesting completion from %s (model=%s, messages=%d)",
        provider.name,
        model_id,
        len(request["messages"]),
    )
    try:
        response = litellm.completion(**request)
    except Exception as e:
        logger.error("Completion request failed: %s", e)
        raise CompletionRequestError(f"LLM call failed: {e}") from e

    if not response.choices:
        raise CompletionRequestError("LLM call failed: response contained no choices")
    choice = response.choices[0]
    return parse_reply(choice.message, choice.finish_reason)
