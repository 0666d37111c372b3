"""Tests for parley.config: TOML loading, merging, CLI integration, logging."""

import argparse
import logging
import tomllib

import pytest

from parley.config import (
    _UNSET,
    DEFAULT_SYSTEM_PROMPT_FILE,
    ConfigError,
    apply_config_to_args,
    clear_log,
    configure_logging,
    generate_config,
    global_config_dir,
    load_config,
    load_system_prompt,
    parse_log_level,
    read_log_tail,
    set_log_level,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_depth": _UNSET,
        "max_output_tokens": _UNSET,
        "system_prompt": _UNSET,
        "system_prompt_file": _UNSET,
        "no_system_prompt": _UNSET,
        "yes": _UNSET,
        "command_timeout": _UNSET,
        "log_file": _UNSET,
        "log_level": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture(autouse=True)
def _isolated_config_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


@pytest.fixture
def restore_parley_logger():
    package_logger = logging.getLogger("parley")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    propagate = package_logger.propagate
    yield package_logger
    for handler in list(package_logger.handlers):
        if handler not in handlers:
            package_logger.removeHandler(handler)
            handler.close()
    package_logger.setLevel(level)
    package_logger.propagate = propagate


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path):
        _write_toml(global_config_dir() / "config.toml", 'model = "gpt-4o"\n')
        assert load_config(tmp_path / "project") == {"model": "gpt-4o"}

    def test_project_overrides_global(self, tmp_path):
        _write_toml(global_config_dir() / "config.toml", 'model = "gpt-4o"\nmax_depth = 5\n')
        project = tmp_path / "project"
        _write_toml(project / "parley.toml", 'model = "anthropic:claude"\n')

        result = load_config(project)

        assert result["model"] == "anthropic:claude"
        assert result["max_depth"] == 5

    def test_project_prompt_replaces_global_prompt(self, tmp_path):
        _write_toml(global_config_dir() / "config.toml", "no_system_prompt = true\n")
        project = tmp_path / "project"
        _write_toml(project / "parley.toml", 'system_prompt = "be brief"\n')

        result = load_config(project)

        assert result["system_prompt"] == "be brief"
        assert "no_system_prompt" not in result

    def test_relative_paths_resolved(self, tmp_path):
        project = tmp_path / "project"
        _write_toml(project / "parley.toml", 'system_prompt_file = "prompts/p.txt"\n')
        result = load_config(project)
        assert result["system_prompt_file"] == str(project.resolve() / "prompts" / "p.txt")

    def test_invalid_toml(self, tmp_path):
        _write_toml(tmp_path / "parley.toml", "model = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_unknown_key_warns(self, tmp_path, capsys):
        _write_toml(tmp_path / "parley.toml", "colour = true\n")
        assert load_config(tmp_path) == {}
        assert "unknown config key 'colour'" in capsys.readouterr().err

    def test_api_key_in_git_project_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "parley.toml", 'api_key = "sk-secret"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err


class TestValidation:
    def test_wrong_type(self, tmp_path):
        _write_toml(tmp_path / "parley.toml", 'max_depth = "ten"\n')
        with pytest.raises(ConfigError, match="'max_depth' expected int, got str"):
            load_config(tmp_path)

    def test_bool_is_not_int(self, tmp_path):
        _write_toml(tmp_path / "parley.toml", "max_depth = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_depth_must_be_positive(self, tmp_path):
        _write_toml(tmp_path / "parley.toml", "max_depth = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_bad_log_level(self, tmp_path):
        _write_toml(tmp_path / "parley.toml", 'log_level = "LOUD"\n')
        with pytest.raises(ConfigError, match="log_level"):
            load_config(tmp_path)

    def test_prompt_keys_exclusive(self, tmp_path):
        _write_toml(
            tmp_path / "parley.toml",
            'system_prompt = "a"\nsystem_prompt_file = "b.txt"\n',
        )
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)


# ===========================================================================
# CLI integration
# ===========================================================================


class TestApplyConfigToArgs:
    def test_defaults_fill_unset(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.model == "gpt-4o-mini"
        assert args.max_depth == 10
        assert args.max_output_tokens == 10000
        assert args.command_timeout == 120
        assert args.log_level == "INFO"
        assert args.yes is False

    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "gpt-4o", "yes": True})
        assert args.model == "gpt-4o"
        assert args.yes is True

    def test_cli_beats_config(self):
        args = _make_args(model="cli-model", max_depth=3)
        apply_config_to_args(args, {"model": "cfg-model", "max_depth": 7})
        assert args.model == "cli-model"
        assert args.max_depth == 3

    def test_cli_prompt_flag_overrides_config_prompt(self):
        args = _make_args(no_system_prompt=True)
        apply_config_to_args(args, {"system_prompt": "from config"})
        assert args.no_system_prompt is True
        assert args.system_prompt is None

    def test_color_key_sets_both_flags(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_cli_color_beats_config(self):
        args = _make_args(color=True)
        apply_config_to_args(args, {"color": False})
        assert args.color is True
        assert args.no_color is False


class TestGenerateConfig:
    def test_template_is_valid_toml(self):
        for project in (False, True):
            assert tomllib.loads(generate_config(project=project)) == {}

    def test_mentions_every_section(self):
        text = generate_config()
        for key in ("model", "max_depth", "command_timeout", "yes", "log_level"):
            assert f"# {key} =" in text


# ===========================================================================
# System prompt
# ===========================================================================


class TestLoadSystemPrompt:
    def test_default_prompt_mentions_tools(self):
        text = load_system_prompt()
        assert text == DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
        for name in ("read_file", "write_file", "list_files", "run_command", "finished"):
            assert name in text

    def test_inline_prompt(self):
        assert load_system_prompt("be brief") == "be brief"

    def test_disabled(self):
        assert load_system_prompt("ignored", no_system_prompt=True) is None

    def test_file(self, tmp_path):
        p = tmp_path / "p.txt"
        p.write_text("  from file  \n", encoding="utf-8")
        assert load_system_prompt(system_prompt_file=str(p)) == "from file"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read system prompt"):
            load_system_prompt(system_prompt_file=str(tmp_path / "absent.txt"))


# ===========================================================================
# Logging
# ===========================================================================


class TestLogging:
    def test_parse_log_level(self):
        assert parse_log_level("debug") == logging.DEBUG
        assert parse_log_level("WARN") == logging.WARNING
        with pytest.raises(ConfigError):
            parse_log_level("chatty")

    def test_configure_logging_writes_file(self, tmp_path, restore_parley_logger):
        log_file = tmp_path / "logs" / "parley.log"
        path = configure_logging(str(log_file), "DEBUG")

        assert path == log_file
        logging.getLogger("parley.tools").debug("hello from tools")
        for handler in restore_parley_logger.handlers:
            handler.flush()
        assert "hello from tools" in log_file.read_text(encoding="utf-8")
        assert restore_parley_logger.propagate is False

    def test_configure_logging_default_location(self, restore_parley_logger):
        path = configure_logging(None)
        assert path == global_config_dir() / "parley.log"

    def test_reconfigure_replaces_handler(self, tmp_path, restore_parley_logger):
        configure_logging(str(tmp_path / "a.log"))
        configure_logging(str(tmp_path / "b.log"))
        file_handlers = [
            h for h in restore_parley_logger.handlers if isinstance(h, logging.FileHandler)
        ]
        assert len(file_handlers) == 1

    def test_set_log_level(self, restore_parley_logger):
        assert set_log_level("warn") == "WARNING"
        assert restore_parley_logger.level == logging.WARNING

    def test_read_log_tail(self, tmp_path):
        log = tmp_path / "x.log"
        log.write_text("\n".join(f"line {i}" for i in range(50)), encoding="utf-8")
        tail = read_log_tail(log, 3)
        assert tail == "line 47\nline 48\nline 49"

    def test_read_log_tail_missing(self, tmp_path):
        assert read_log_tail(tmp_path / "nope.log") == "Log file not found or cannot be read."

    def test_read_log_tail_disabled(self):
        assert read_log_tail(None) == "Logging to file is disabled."

    def test_clear_log(self, tmp_path):
        log = tmp_path / "x.log"
        log.write_text("line 1\nline 2\n", encoding="utf-8")
        assert clear_log(log) == "Log file cleared."
        assert log.read_text(encoding="utf-8") == ""

    def test_clear_log_disabled(self):
        assert clear_log(None) == "Logging to file is disabled."

    def test_clear_log_unwritable(self, tmp_path):
        assert clear_log(tmp_path).startswith("Failed to clear log file:")
