"""Tool definitions, the tool registry, and the tool implementations."""

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path

from .errors import ToolExecutionError
from .messages import ToolCall, ToolDefinition

logger = logging.getLogger(__name__)

COMPLETION_SENTINEL = "CONVERSATION_COMPLETE:"
NEUTRALIZED_PREFIX = "(output) "

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
DEFAULT_COMMAND_TIMEOUT = 120

READ_FILE_TOOL = ToolDefinition(
    name="read_file",
    description="Read the contents of a file.",
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path to read.",
            }
        },
        "required": ["path"],
    },
)

WRITE_FILE_TOOL = ToolDefinition(
    name="write_file",
    description=(
        "Write content to a file, creating it if needed. "
        "The operator reviews a diff and must approve the write."
    ),
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path to write to.",
            },
            "content": {
                "type": "string",
                "description": "The full content to write to the file.",
            },
        },
        "required": ["path", "content"],
    },
)

LIST_FILES_TOOL = ToolDefinition(
    name="list_files",
    description="List files and directories in a directory.",
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The directory path to list (defaults to current directory).",
                "default": ".",
            }
        },
        "required": [],
    },
)

RUN_COMMAND_TOOL = ToolDefinition(
    name="run_command",
    description=(
        "Execute a shell command (via sh -c) and return its output. "
        "A non-zero exit status is reported together with stderr."
    ),
    parameters={
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute.",
            }
        },
        "required": ["command"],
    },
)

FINISHED_TOOL = ToolDefinition(
    name="finished",
    description=(
        "REQUIRED: Call this tool when you have completed your response and want "
        "to transfer control back to the user. This must be called at the end of "
        "every interaction."
    ),
    parameters={
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "A brief summary of what you accomplished or found.",
            }
        },
        "required": ["summary"],
    },
)

TOOLS = [
    READ_FILE_TOOL,
    WRITE_FILE_TOOL,
    LIST_FILES_TOOL,
    RUN_COMMAND_TOOL,
    FINISHED_TOOL,
]


def is_termination(result: str) -> bool:
    """True if a tool result carries the end-of-conversation sentinel."""
    return result.startswith(COMPLETION_SENTINEL)


def termination_summary(result: str) -> str:
    return result[len(COMPLETION_SENTINEL) :]


Handler = Callable[[dict], str]


class ToolRegistry:
    """Named tools with their handlers. Frozen once startup is complete."""

    def __init__(self, log: logging.Logger | None = None):
        self._tools: dict[str, tuple[ToolDefinition, Handler, bool]] = {}
        self._frozen = False
        self.logger = log or logger

    def register(
        self,
        definition: ToolDefinition,
        handler: Handler,
        *,
        signals_completion: bool = False,
    ) -> None:
        if self._frozen:
            raise RuntimeError("tool registry is frozen; register tools at startup")
        if definition.name in self._tools:
            raise ValueError(f"tool {definition.name!r} is already registered")
        self._tools[definition.name] = (definition, handler, signals_completion)

    def freeze(self) -> None:
        self._frozen = True

    def definitions(self) -> list[ToolDefinition]:
        return [entry[0] for entry in self._tools.values()]

    def schemas(self) -> list[dict]:
        return [d.schema() for d in self.definitions()]

    def execute(self, call: ToolCall) -> str:
        """Run one tool call and return its result text.

        Never raises: unknown tools, malformed arguments and handler failures
        all come back as text so the conversation can continue.
        """
        entry = self._tools.get(call.name)
        if entry is None:
            self.logger.warning("Unknown tool requested: %s", call.name)
            return f"Unknown tool: {call.name}"
        _definition, handler, signals_completion = entry

        if call.parse_error is not None:
            return f"error: {call.name}: invalid JSON in tool arguments: {call.parse_error}"

        try:
            result = handler(call.arguments)
        except ToolExecutionError as e:
            result = f"error: {call.name}: {e}"
        except KeyError as e:
            result = f"error: {call.name}: missing required argument {e}"
        except Exception as e:
            self.logger.exception("Tool %s raised", call.name)
            result = f"error: {call.name}: {e}"

        if not isinstance(result, str):
            result = str(result)
        if not signals_completion and is_termination(result):
            result = NEUTRALIZED_PREFIX + result
        return result


# ---------------------------------------------------------------------------
# Tool implementations
# ---------------------------------------------------------------------------


def _require_str(args: dict, key: str, default: str | None = None) -> str:
    value = args.get(key)
    if value is None:
        value = default
    if value is None:
        raise KeyError(key)
    if not isinstance(value, str):
        raise ToolExecutionError(
            f"argument {key!r} must be a string, got {type(value).__name__}"
        )
    return value


def resolve_path(path: str, base_dir: str) -> Path:
    """Resolve a tool path against base_dir. Absolute paths are used as given."""
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p


def _read_text(path: Path) -> str:
    # newline="" keeps CRLF as on disk
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def _read_file(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if not resolved.exists():
        return f"error: path does not exist: {path}"
    if resolved.is_dir():
        return f"error: path is a directory, use list_files: {path}"

    with open(resolved, "rb") as f:
        chunk = f.read(BINARY_CHECK_BYTES)
    if b"\x00" in chunk:
        return f"error: binary file detected: {path}"

    try:
        text = _read_text(resolved)
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {path} as UTF-8: {exc}"
    return f"File contents of {path}:\n{text}"


def _write_file(path: str, content: str, base_dir: str, gate) -> str:
    resolved = resolve_path(path, base_dir)
    if resolved.is_dir():
        return f"error: path is a directory: {path}"

    old_content = None
    if resolved.exists():
        try:
            old_content = _read_text(resolved)
        except UnicodeDecodeError:
            return f"error: refusing to overwrite non-UTF-8 file: {path}"

    if not gate.confirm_write(path, old_content, content):
        return f"File write cancelled by user: {path}"

    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Successfully wrote {len(data)} bytes to {path}"


def _list_files(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if not resolved.exists():
        return f"error: path does not exist: {path}"
    if not resolved.is_dir():
        return f"error: path is not a directory: {path}"

    entries = []
    for child in sorted(resolved.iterdir(), key=lambda c: c.name):
        if child.is_dir():
            entries.append(f"[dir]  {child.name}/")
        else:
            entries.append(f"[file] {child.name}")
    if not entries:
        return f"Contents of {path}:\n(empty directory)"
    return f"Contents of {path}:\n" + "\n".join(entries)


_KILL_WAIT_TIMEOUT = 5  # seconds to wait for the shell to exit after SIGKILL


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill the shell and everything it started, then reap it.

    The shell runs in its own session (start_new_session=True), so its process
    group holds every descendant that did not detach itself.
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        pass  # already exited
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("Shell process %d did not exit after SIGKILL", proc.pid)


class _CappedReader:
    """Drain a pipe on a background thread, keeping at most MAX_OUTPUT_BYTES."""

    def __init__(self, stream):
        self.stream = stream
        self.chunks: list[bytes] = []
        self.total = 0
        self.truncated = False
        self.thread = threading.Thread(target=self._drain, daemon=True)
        self.thread.start()

    def _drain(self) -> None:
        try:
            while True:
                chunk = self.stream.read(4096)
                if not chunk:
                    break
                if self.truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_OUTPUT_BYTES - self.total
                if len(chunk) > remaining:
                    chunk = chunk[:remaining]
                    self.truncated = True
                self.chunks.append(chunk)
                self.total += len(chunk)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    def text(self) -> str:
        self.thread.join(timeout=2)
        self.stream.close()
        text = b"".join(self.chunks).decode("utf-8", errors="replace")
        if self.truncated:
            text += "\n[output truncated at 50KB]"
        return text


def _run_command(command: str, base_dir: str, timeout: int = DEFAULT_COMMAND_TIMEOUT) -> str:
    """Run a shell string via sh -c, capturing stdout and stderr separately."""
    if not command.strip():
        return "error: command is empty"
    base_path = Path(base_dir)
    if not base_path.is_dir():
        return f"error: base directory is not a directory: {base_dir}"

    try:
        proc = subprocess.Popen(
            ["sh", "-c", command],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=base_dir,
            start_new_session=True,
        )
    except OSError as e:
        return f"error: failed to start shell command: {e}"

    stdout = _CappedReader(proc.stdout)
    stderr = _CappedReader(proc.stderr)
    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("Command timed out after %ss, killing process group: %s", timeout, command)
        _kill_process_tree(proc)

    out_text = stdout.text()
    err_text = stderr.text()

    if timed_out:
        return f"error: command timed out after {timeout}s"
    if proc.returncode != 0:
        detail = err_text or out_text
        return f"error: command failed (exit code {proc.returncode}):\n{detail}"
    return f"Command output:\n{out_text or '(no output)'}"


def _finished(summary: str) -> str:
    return f"{COMPLETION_SENTINEL}{summary}"


def build_registry(
    base_dir: str,
    gate,
    *,
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
    log: logging.Logger | None = None,
) -> ToolRegistry:
    """Register the five built-in tools and freeze the registry."""
    registry = ToolRegistry(log)
    registry.register(
        READ_FILE_TOOL,
        lambda args: _read_file(_require_str(args, "path"), base_dir),
    )
    registry.register(
        WRITE_FILE_TOOL,
        lambda args: _write_file(
            _require_str(args, "path"),
            _require_str(args, "content"),
            base_dir,
            gate,
        ),
    )
    registry.register(
        LIST_FILES_TOOL,
        lambda args: _list_files(_require_str(args, "path", "."), base_dir),
    )
    registry.register(
        RUN_COMMAND_TOOL,
        lambda args: _run_command(
            _require_str(args, "command"), base_dir, timeout=command_timeout
        ),
    )
    registry.register(
        FINISHED_TOOL,
        lambda args: _finished(_require_str(args, "summary")),
        signals_completion=True,
    )
    registry.freeze()
    return registry
