"""Configuration file loading and merging for parley.

Reads TOML config from ~/.config/parley/config.toml (global) and
<base_dir>/parley.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import logging
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError  # noqa: F401 (re-exported)

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
LOG_FILE_NAME = "parley.log"

# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_depth": int,
    "max_output_tokens": int,
    "system_prompt": str,
    "system_prompt_file": str,
    "no_system_prompt": bool,
    "yes": bool,
    "command_timeout": int,
    "log_file": str,
    "log_level": str,
    "color": bool,
    "quiet": bool,
}

_PROMPT_KEYS = ("system_prompt", "system_prompt_file", "no_system_prompt")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": "gpt-4o-mini",
    "api_key": None,
    "base_url": None,
    "max_depth": 10,
    "max_output_tokens": 10000,
    "system_prompt": None,
    "system_prompt_file": None,
    "no_system_prompt": False,
    "yes": False,
    "command_timeout": 120,
    "log_file": None,
    "log_level": "INFO",
    "color": False,
    "no_color": False,
    "quiet": False,
}

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "parley"
    return Path.home() / ".config" / "parley"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_prompt_exclusion(config: dict, source: str) -> None:
    set_keys = [k for k in _PROMPT_KEYS if config.get(k)]
    if len(set_keys) > 1:
        joined = ", ".join(repr(k) for k in set_keys)
        raise ConfigError(f"{source}: {joined} are mutually exclusive")


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    for key in ("max_depth", "max_output_tokens", "command_timeout"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")

    if "log_level" in config and config["log_level"].upper() not in LOG_LEVELS:
        raise ConfigError(
            f"{source}: 'log_level' must be one of DEBUG, INFO, WARN, ERROR"
        )

    _check_prompt_exclusion(config, source)


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative file paths against the config file's parent directory."""
    for key in ("system_prompt_file", "log_file"):
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files
    (no defaults injected). Relative paths are resolved against each config
    file's parent directory.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "parley.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    # A prompt choice in the project file replaces the global one entirely
    if any(k in project_config for k in _PROMPT_KEYS):
        for k in _PROMPT_KEYS:
            global_config.pop(k, None)

    merged = {**global_config, **project_config}
    _check_prompt_exclusion(merged, "merged config")
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to the argparse namespace where the CLI set nothing.

    Remaining _UNSET sentinels are then replaced with hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    # Any prompt flag on the CLI overrides every prompt key from config
    cli_prompt = any(not _is_unset(k) for k in _PROMPT_KEYS)

    for key, value in config.items():
        if key == "color":
            continue
        if cli_prompt and key in _PROMPT_KEYS:
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def load_system_prompt(
    system_prompt: str | None = None,
    system_prompt_file: str | None = None,
    no_system_prompt: bool = False,
) -> str | None:
    """Resolve the system prompt text, or None when it is disabled."""
    if no_system_prompt:
        return None
    if system_prompt:
        return system_prompt
    path = Path(system_prompt_file) if system_prompt_file else DEFAULT_SYSTEM_PROMPT_FILE
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigError(f"cannot read system prompt file {path}: {e}") from e


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# parley configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/parley.toml' if project else '~/.config/parley/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        '# model = "gpt-4o-mini"            # or "anthropic:claude-3-5-sonnet-20241022", "custom:llama3"',
        '# api_key = "sk-..."               # prefer OPENAI_API_KEY / ANTHROPIC_API_KEY',
        '# base_url = "http://localhost:11434/v1"',
        "",
        "# --- Turn limits ---",
        "# max_depth = 10                   # tool rounds per turn",
        "# max_output_tokens = 10000",
        "# command_timeout = 120            # seconds, for run_command",
        "",
        "# --- System prompt (pick one) ---",
        '# system_prompt = "You are a helpful assistant."',
        '# system_prompt_file = "prompt.txt"',
        "# no_system_prompt = false",
        "",
        "# --- Approval ---",
        "# yes = false                      # approve file writes without asking",
        "",
        "# --- Logging / UI ---",
        '# log_file = "parley.log"',
        '# log_level = "INFO"               # DEBUG | INFO | WARN | ERROR',
        "# color = true",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)


# --- Logging ---


def parse_log_level(name: str) -> int:
    level = LOG_LEVELS.get(name.strip().upper())
    if level is None:
        raise ConfigError(f"invalid log level {name!r}: use DEBUG, INFO, WARN or ERROR")
    return level


def default_log_file() -> Path:
    return global_config_dir() / LOG_FILE_NAME


def configure_logging(log_file: str | None, level: str = "INFO") -> Path | None:
    """Send the parley logger to a file. Returns the log path, or None on failure."""
    package_logger = logging.getLogger("parley")
    package_logger.setLevel(parse_log_level(level))
    package_logger.propagate = False
    for handler in list(package_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            package_logger.removeHandler(handler)
            handler.close()

    path = Path(log_file).expanduser() if log_file else default_log_file()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as e:
        print(f"warning: cannot open log file {path}: {e}", file=sys.stderr)
        return None
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    )
    package_logger.addHandler(handler)
    return path


def set_log_level(name: str) -> str:
    """Change the parley logger level at runtime. Returns the canonical name."""
    level = parse_log_level(name)
    logging.getLogger("parley").setLevel(level)
    return logging.getLevelName(level)


def read_log_tail(path: Path | None, lines: int = 20) -> str:
    """Return the last `lines` lines of the log file."""
    if path is None:
        return "Logging to file is disabled."
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return "Log file not found or cannot be read."
    tail = content.splitlines()[-lines:] if lines > 0 else []
    return "\n".join(tail)


def clear_log(path: Path | None) -> str:
    """Truncate the log file. Returns a message for the operator."""
    if path is None:
        return "Logging to file is disabled."
    try:
        with open(path, "w", encoding="utf-8"):
            pass
    except OSError as e:
        return f"Failed to clear log file: {e}"
    logging.getLogger(__name__).info("Log file cleared")
    return "Log file cleared."
