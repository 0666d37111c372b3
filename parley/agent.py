import argparse
import functools
import json
import logging
import os
import sys
import time
from collections.abc import Callable
from importlib import metadata
from pathlib import Path

from . import fmt
from .completion import Provider, complete as request_completion
from .config import (
    _UNSET,
    apply_config_to_args,
    clear_log,
    configure_logging,
    generate_config,
    global_config_dir,
    load_config,
    read_log_tail,
    set_log_level,
)
from .errors import AgentError, CompletionRequestError, ConfigError
from .messages import (
    Completion,
    ToolCall,
    TurnResult,
    assistant_message,
    tool_message,
    user_message,
)
from .tools import ToolRegistry, is_termination, termination_summary

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000

MAX_DEPTH_MESSAGE = (
    "I've reached the maximum number of tool calls. "
    "Please try breaking your request into smaller parts."
)
EMPTY_REPLY_MESSAGE = "Sorry, I couldn't process that request."
EMPTY_FOLLOW_UP_MESSAGE = "I completed the task but couldn't provide a final response."

CompleteFn = Callable[..., Completion]


@functools.lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            if isinstance(tc, ToolCall):
                content += tc.name + tc.raw_arguments
            elif isinstance(tc, dict):
                fn = tc.get("function", {})
                content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def handle_tool_call(
    call: ToolCall,
    registry: ToolRegistry,
    verbose: bool,
    log: logging.Logger | None = None,
) -> tuple[dict, dict]:
    """Execute a single tool call and return (tool_msg, metadata).

    tool_msg is the message dict for the conversation.
    metadata has stable keys: name, arguments, elapsed, succeeded.
    """
    log = log or logger

    if verbose:
        if call.parse_error is not None:
            fmt.tool_call(call.name, call.raw_arguments[:MAX_ARG_LOG])
        else:
            pretty = json.dumps(call.arguments, indent=2)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(call.name, pretty)

    log.info("Executing tool %s (id=%s)", call.name, call.id)
    t0 = time.monotonic()
    result = registry.execute(call)
    elapsed = time.monotonic() - t0

    succeeded = not (result.startswith("error:") or result.startswith("Unknown tool:"))
    log.debug("Tool %s returned %d chars in %.2fs", call.name, len(result), elapsed)
    if verbose:
        if not succeeded:
            fmt.tool_error(call.name, result)
        else:
            fmt.tool_result(call.name, elapsed, result[:500])

    return (
        tool_message(call.id, result),
        {
            "name": call.name,
            "arguments": call.arguments,
            "elapsed": elapsed,
            "succeeded": succeeded,
        },
    )


def run_turn(
    prior_messages: list[dict],
    user_input: str,
    system_prompt: str | None,
    model_id: str,
    max_depth: int,
    max_tokens: int,
    *,
    registry: ToolRegistry,
    provider: Provider | None = None,
    complete: CompleteFn | None = None,
    verbose: bool = False,
    log: logging.Logger | None = None,
) -> TurnResult:
    """Run one operator turn to completion.

    Requests a completion, executes any tool calls it carries in order,
    feeds the results back and repeats until the model answers without tools,
    calls `finished`, or `max_depth` tool rounds have been resolved.

    prior_messages is not modified; the returned TurnResult holds the new
    history. CompletionRequestError propagates to the caller.
    """
    log = log or logger
    if complete is None:
        if provider is None:
            raise AgentError("run_turn needs a provider or a complete callable")
        complete = functools.partial(request_completion, provider=provider)

    messages = list(prior_messages)
    messages.append(user_message(user_input))
    tool_definitions = registry.definitions()
    depth = 0

    log.info(
        "Starting turn (model=%s, prior messages=%d)", model_id, len(prior_messages)
    )

    while True:
        if verbose:
            fmt.round_header(
                depth, max_depth, estimate_tokens(messages, registry.schemas())
            )

        t0 = time.monotonic()
        if verbose:
            with fmt.llm_spinner():
                reply = complete(
                    system_prompt, list(messages), tool_definitions, model_id, max_tokens
                )
        else:
            reply = complete(
                system_prompt, list(messages), tool_definitions, model_id, max_tokens
            )
        if verbose:
            fmt.llm_timing(time.monotonic() - t0, reply.finish_reason)

        if not reply.tool_calls:
            content = reply.content
            if not content:
                content = EMPTY_FOLLOW_UP_MESSAGE if depth else EMPTY_REPLY_MESSAGE
            messages.append(assistant_message(content))
            if verbose:
                fmt.completion(depth, "done")
            log.info("Turn done after %d tool rounds", depth)
            return TurnResult(messages, "done", content, depth)

        if depth >= max_depth:
            log.error("Max recursion depth reached, stopping tool execution (depth=%d)", depth)
            messages.append(assistant_message(MAX_DEPTH_MESSAGE))
            if verbose:
                fmt.completion(depth, "max_depth")
            return TurnResult(messages, "max_depth", MAX_DEPTH_MESSAGE, depth)

        messages.append(assistant_message(reply.content, reply.tool_calls))
        if reply.content and verbose:
            fmt.assistant_text(reply.content)

        # Every call gets its result before termination is considered.
        summary = None
        for call in reply.tool_calls:
            tool_msg, _meta = handle_tool_call(call, registry, verbose, log)
            messages.append(tool_msg)
            if is_termination(tool_msg["content"]):
                summary = termination_summary(tool_msg["content"])
                log.info("Conversation finished by model: %s", summary)

        if summary is not None:
            content = reply.content or f"Task completed: {summary}"
            messages.append(assistant_message(content))
            if verbose:
                fmt.completion(depth, "finished")
            return TurnResult(messages, "finished", content, depth)

        depth += 1
        log.info("Requesting follow-up completion (depth=%d)", depth)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="parley",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal assistant that can read, write and list files and run shell commands.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help='Model id, optionally prefixed by provider: "gpt-4o", '
        '"anthropic:claude-3-5-sonnet-20241022", "custom:llama3" (default: gpt-4o-mini).',
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="API base URL (required for the custom provider).",
    )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=_UNSET,
        help="Maximum tool rounds per turn (default: 10).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum completion tokens per request (default: 10000).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="System prompt text.",
    )
    prompt_group.add_argument(
        "--system-prompt-file",
        default=_UNSET,
        help="Read the system prompt from a file.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory that relative tool paths and commands run in (default: .).",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        default=_UNSET,
        help="Approve file writes without asking.",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help="Timeout in seconds for run_command (default: 120).",
    )
    parser.add_argument(
        "--log-file",
        default=_UNSET,
        help="Log file path (default: ~/.config/parley/parley.log).",
    )
    parser.add_argument(
        "--log-level",
        default=_UNSET,
        choices=["DEBUG", "INFO", "WARN", "WARNING", "ERROR"],
        type=str.upper,
        help="Log level (default: config log_level, then $LOG_LEVEL, then INFO).",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (parley.toml) variant.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("parley")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    # $LOG_LEVEL ranks below --log-level and config files
    if (
        args.log_level is _UNSET
        and "log_level" not in config
        and os.environ.get("LOG_LEVEL")
    ):
        args.log_level = os.environ["LOG_LEVEL"].upper()
    apply_config_to_args(args, config)

    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")

    fmt.init(color=args.color, no_color=args.no_color)

    try:
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        logger.error("Fatal: %s", e)
        sys.exit(1)


def _run_main(args):
    from .session import Session

    log_path = configure_logging(args.log_file, args.log_level)

    session = Session(
        base_dir=args.base_dir,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_depth=args.max_depth,
        max_output_tokens=args.max_output_tokens,
        system_prompt=args.system_prompt,
        system_prompt_file=args.system_prompt_file,
        no_system_prompt=args.no_system_prompt,
        auto_approve=args.yes,
        command_timeout=args.command_timeout,
        verbose=args.verbose,
    )
    if args.verbose:
        fmt.model_info(f"Using model: {session.model}")

    if not args.repl:
        result = session.run(args.question)
        print(result.answer)
        if result.reached_max_depth:
            fmt.warning("maximum tool rounds reached, turn stopped.")
            sys.exit(2)
        return

    if args.question:
        try:
            result = session.ask(args.question)
        except CompletionRequestError as e:
            fmt.error(str(e))
        else:
            print(result.answer)
            if result.reached_max_depth:
                fmt.warning("maximum tool rounds reached for initial question.")

    repl_loop(session, log_path=log_path, verbose=args.verbose)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help, /h             Show this help message\n"
        "  /clear                Reset the conversation\n"
        "  /model [name], /m     Show or switch the model\n"
        "  /depth [N]            Show or set the maximum tool rounds per turn\n"
        "  /logs [N]             Show the last N log lines (default: 20)\n"
        "  /clearlogs            Empty the log file\n"
        "  /loglevel [LEVEL]     Show or set the log level (DEBUG, INFO, WARN, ERROR)\n"
        "  !<command>            Run a shell command without asking the model\n"
        "  /exit, /quit          Exit the REPL"
    )


def _repl_clear(session) -> None:
    dropped = len(session.history)
    session.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_model(arg: str, session) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"current model: {session.model}")
        return
    try:
        session.set_model(arg)
    except ConfigError as e:
        fmt.warning(str(e))
        return
    logger.info("Model switched via slash command to %s", arg)
    fmt.info(f"switched to model: {arg}")


def _repl_depth(arg: str, session) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"max tool rounds per turn: {session.max_depth}")
        return
    try:
        n = int(arg)
    except ValueError:
        fmt.warning(f"invalid number: {arg}")
        return
    if n < 1:
        fmt.warning("max depth must be at least 1")
        return
    session.max_depth = n
    fmt.info(f"max tool rounds per turn set to {n}")


def _repl_logs(arg: str, log_path: Path | None) -> None:
    arg = arg.strip()
    lines = 20
    if arg:
        try:
            lines = int(arg)
        except ValueError:
            fmt.warning(f"invalid number: {arg}")
            return
    fmt.info(f"Recent log entries:\n{read_log_tail(log_path, lines)}")


def _repl_clearlogs(log_path: Path | None) -> None:
    fmt.info(clear_log(log_path))


def _repl_loglevel(arg: str) -> None:
    arg = arg.strip()
    if not arg:
        level = logging.getLevelName(logging.getLogger("parley").getEffectiveLevel())
        fmt.info(f"current log level: {level}\nAvailable levels: DEBUG, INFO, WARN, ERROR")
        return
    try:
        name = set_log_level(arg)
    except ConfigError as e:
        fmt.warning(str(e))
        return
    fmt.info(f"log level set to: {name}")


def _repl_bang(command: str, session) -> None:
    command = command.strip()
    if not command:
        fmt.warning("no shell command provided. Usage: !<command>")
        return
    logger.info("Executing bang command: %s", command)
    fmt.command_output(command, session.run_bang(command))


def repl_loop(session, *, log_path: Path | None = None, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = global_config_dir() / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "parley> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break

        if line.startswith("!"):
            _repl_bang(line[1:], session)
            continue

        if line.startswith("/"):
            cmd_parts = line.split(None, 1)
            cmd = cmd_parts[0].lower()
            cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

            if cmd in ("/help", "/h"):
                _repl_help()
            elif cmd == "/clear":
                _repl_clear(session)
            elif cmd in ("/model", "/m"):
                _repl_model(cmd_arg, session)
            elif cmd == "/depth":
                _repl_depth(cmd_arg, session)
            elif cmd == "/logs":
                _repl_logs(cmd_arg, log_path)
            elif cmd == "/clearlogs":
                _repl_clearlogs(log_path)
            elif cmd == "/loglevel":
                _repl_loglevel(cmd_arg)
            else:
                fmt.warning(f"unknown command: {cmd}. Type /help for available commands.")
            continue

        try:
            result = session.ask(line)
        except CompletionRequestError as e:
            fmt.error(str(e))
            continue
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue

        print(result.answer)
        if result.reached_max_depth:
            fmt.warning("maximum tool rounds reached for this question.")


if __name__ == "__main__":
    main()
