"""Public library API for parley: the Session class.

A Session owns the conversation history between turns. Each turn is handed
the history, returns a new one, and the session keeps it.
"""

import copy
from collections.abc import Callable

from .approval import ApprovalGate
from .completion import CustomProvider, resolve_provider
from .config import load_system_prompt
from .errors import ConfigError
from .messages import ToolCall, TurnResult, rendered_messages
from .tools import DEFAULT_COMMAND_TIMEOUT, build_registry


class Session:
    """Programmatic interface to the parley turn driver.

    Stores configuration as plain attributes. Call .ask() for multi-turn
    conversations or .run() for independent single-shot questions.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        base_url: str | None = None,
        max_depth: int = 10,
        max_output_tokens: int = 10000,
        system_prompt: str | None = None,
        system_prompt_file: str | None = None,
        no_system_prompt: bool = False,
        auto_approve: bool = False,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        verbose: bool = False,
        ask: Callable[[str], str] | None = None,
        complete: Callable | None = None,
    ):
        self.base_dir = base_dir
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_depth = max_depth
        self.max_output_tokens = max_output_tokens
        self.system_prompt = system_prompt
        self.system_prompt_file = system_prompt_file
        self.no_system_prompt = no_system_prompt
        self.auto_approve = auto_approve
        self.command_timeout = command_timeout
        self.verbose = verbose
        self.ask_operator = ask
        self.complete = complete

        self._setup_done = False
        self._provider = None
        self._model_id: str | None = None
        self._system_content: str | None = None
        self._registry = None
        self.gate: ApprovalGate | None = None

        self._history: list[dict] = []

    def _resolve_model(self, model_spec: str):
        provider, model_id = resolve_provider(
            model_spec, api_key=self.api_key, base_url=self.base_url
        )
        if (
            self.complete is None
            and not isinstance(provider, CustomProvider)
            and not provider.api_key
        ):
            raise ConfigError(
                f"no API key for provider {provider.name!r}: "
                f"set {provider.api_key_env} or use --api-key"
            )
        return provider, model_id

    def _setup(self) -> None:
        """One-time setup: provider, approval gate, tool registry, system prompt."""
        if self._setup_done:
            return

        self._provider, self._model_id = self._resolve_model(self.model)
        self.gate = ApprovalGate(
            self.ask_operator, auto_approve=self.auto_approve, verbose=self.verbose
        )
        self._registry = build_registry(
            self.base_dir, self.gate, command_timeout=self.command_timeout
        )
        self._system_content = load_system_prompt(
            self.system_prompt, self.system_prompt_file, self.no_system_prompt
        )
        self._setup_done = True

    @property
    def history(self) -> list[dict]:
        return list(self._history)

    @property
    def transcript(self) -> list[dict]:
        """Questions and final answers only, as the operator saw them."""
        return rendered_messages(self._history)

    @property
    def registry(self):
        self._setup()
        return self._registry

    def set_model(self, model_spec: str) -> None:
        """Switch models between turns. Raises ConfigError for an unusable model spec."""
        self._setup()
        self._provider, self._model_id = self._resolve_model(model_spec)
        self.model = model_spec

    def _turn(self, prior: list[dict], question: str) -> TurnResult:
        from .agent import run_turn

        return run_turn(
            prior,
            question,
            self._system_content,
            self._model_id,
            self.max_depth,
            self.max_output_tokens,
            registry=self._registry,
            provider=self._provider,
            complete=self.complete,
            verbose=self.verbose,
        )

    def ask(self, question: str) -> TurnResult:
        """Conversational: share context across questions (like the REPL).

        History is only replaced when the turn completes; a failed completion
        request leaves it as it was.
        """
        self._setup()
        result = self._turn(self._history, question)
        self._history = result.messages
        return result

    def run(self, question: str) -> TurnResult:
        """Single-shot: run a question with fresh history. Each call is independent."""
        self._setup()
        result = self._turn([], question)
        result.messages = copy.deepcopy(result.messages)
        return result

    def reset(self) -> None:
        """Clear conversation history without invalidating setup."""
        self._history = []

    def run_bang(self, command: str) -> str:
        """Run a shell command for the operator directly, bypassing the model."""
        self._setup()
        call = ToolCall(id="operator", name="run_command", arguments={"command": command})
        return self._registry.execute(call)
