"""Tests for the CLI backend adapters and roster helpers."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from src.backends.base import (
    FEED_TOOL_NAMES,
    BackendType,
    BuildArgsOptions,
    PermissionMode,
    ToolServerSpec,
    runtime_env,
)
from src.backends.claude import ClaudeBackend
from src.backends.codex import CodexBackend
from src.backends.gemini import GeminiBackend
from src.backends.registry import (
    BackendRoster,
    create_backend,
    detect_installed_backends,
    migrate_session_file,
    probe_backend,
)
from tests.helpers import FakeBackend, make_entry

SPEC = ToolServerSpec(
    command="/usr/bin/python3",
    args=("-m", "src.tools.feed_server"),
    env={"AGENTFEED_BASE_URL": "http://feed/api", "AGENTFEED_API_KEY": "af_key"},
)


def _opts(**overrides) -> BuildArgsOptions:
    fields = {"prompt": "PROMPT", "system_prompt": "SYSTEM"}
    fields.update(overrides)
    return BuildArgsOptions(**fields)


def _flag_values(args: list[str], flag: str) -> list[str]:
    return [args[i + 1] for i, a in enumerate(args) if a == flag]


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------


class TestClaudeBackend:
    def test_tool_server_config_written_once(self, tmp_path: Path) -> None:
        backend = ClaudeBackend(config_dir=tmp_path)
        backend.setup_tool_server(SPEC)
        config = json.loads(backend.config_path.read_text())
        assert config["mcpServers"]["agentfeed"]["command"] == "/usr/bin/python3"
        assert config["mcpServers"]["agentfeed"]["env"]["AGENTFEED_API_KEY"] == "af_key"

        backend.config_path.write_text("{}")
        backend.setup_tool_server(SPEC)
        assert backend.config_path.read_text() == "{}"

    def test_safe_new_session_args(self, tmp_path: Path) -> None:
        backend = ClaudeBackend(config_dir=tmp_path)
        args = backend.build_args(_opts(allowed_tools=["Read"]))
        assert args[:4] == ["-p", "PROMPT", "--append-system-prompt", "SYSTEM"]
        assert _flag_values(args, "--allowedTools") == ["mcp__agentfeed__*", "Read"]
        assert "--dangerously-skip-permissions" not in args
        assert args[-3:] == ["--output-format", "stream-json", "--verbose"]

    def test_yolo_resume_with_model_and_chrome(self, tmp_path: Path) -> None:
        backend = ClaudeBackend(config_dir=tmp_path)
        args = backend.build_args(_opts(
            permission_mode=PermissionMode.yolo, session_id="sess-1", model="opus", chrome=True,
        ))
        assert "--dangerously-skip-permissions" in args
        assert "--allowedTools" not in args
        assert _flag_values(args, "--resume") == ["sess-1"]
        assert _flag_values(args, "--model") == ["opus"]
        assert "--chrome" in args
        assert "--output-format" not in args

    def test_chrome_tools_allowed_in_safe_mode(self, tmp_path: Path) -> None:
        args = ClaudeBackend(config_dir=tmp_path).build_args(_opts(chrome=True))
        assert "mcp__claude-in-chrome__*" in _flag_values(args, "--allowedTools")

    def test_env_is_filtered(self, tmp_path: Path) -> None:
        backend = ClaudeBackend(config_dir=tmp_path)
        env = backend.build_env(
            {"PATH": "/bin"},
            {"ANTHROPIC_API_KEY": "sk", "OPENAI_API_KEY": "leak", "SECRET": "leak"},
        )
        assert env == {
            "PATH": "/bin",
            "ANTHROPIC_API_KEY": "sk",
            "CLAUDE_AUTOCOMPACT_PCT_OVERRIDE": "50",
        }

    def test_parse_stream(self) -> None:
        backend = ClaudeBackend()
        assert backend.parse_session_id('{"type":"result","session_id":"abc"}') == "abc"
        assert backend.parse_session_id('{"type":"assistant"}') is None
        line = json.dumps({
            "type": "assistant",
            "message": {"content": [
                {"type": "text", "text": "Hello "},
                {"type": "tool_use", "name": "x"},
                {"type": "text", "text": "world"},
            ]},
        })
        assert backend.parse_stream_text(line) == "Hello world"
        assert backend.parse_stream_text("not json") is None


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------


class TestCodexBackend:
    def test_tool_server_passed_as_config_overrides(self) -> None:
        backend = CodexBackend()
        backend.setup_tool_server(SPEC)
        args = backend.build_args(_opts())
        overrides = _flag_values(args, "-c")
        assert "mcp_servers.agentfeed.command=/usr/bin/python3" in overrides
        assert 'mcp_servers.agentfeed.args=["-m", "src.tools.feed_server"]' in overrides
        assert "mcp_servers.agentfeed.env.AGENTFEED_API_KEY=af_key" in overrides
        assert 'instructions="SYSTEM"' in overrides

    def test_safe_vs_yolo(self) -> None:
        backend = CodexBackend()
        assert "--full-auto" in backend.build_args(_opts())
        yolo = backend.build_args(_opts(permission_mode=PermissionMode.yolo))
        assert "--dangerously-bypass-approvals-and-sandbox" in yolo
        assert "--full-auto" not in yolo

    def test_resume_precedes_prompt(self) -> None:
        args = CodexBackend().build_args(_opts(session_id="th_1"))
        assert args[0] == "exec"
        assert args[-3:] == ["resume", "th_1", "PROMPT"]
        assert "--json" in args and "--skip-git-repo-check" in args

    def test_parse_stream(self) -> None:
        backend = CodexBackend()
        assert backend.parse_session_id('{"type":"thread.started","thread_id":"th_1"}') == "th_1"
        line = '{"type":"item.completed","item":{"type":"agent_message","text":"done"}}'
        assert backend.parse_stream_text(line) == "done"
        reasoning = '{"type":"item.completed","item":{"type":"reasoning","text":"hmm"}}'
        assert backend.parse_stream_text(reasoning) is None


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class TestGeminiBackend:
    def test_settings_merged_not_replaced(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"theme": "dark", "mcpServers": {"other": {"command": "x"}}}))
        GeminiBackend(settings_path=path).setup_tool_server(SPEC)
        data = json.loads(path.read_text())
        assert data["theme"] == "dark"
        assert set(data["mcpServers"]) == {"other", "agentfeed"}

    def test_corrupt_settings_start_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text("{broken")
        GeminiBackend(settings_path=path).setup_tool_server(SPEC)
        assert set(json.loads(path.read_text())) == {"mcpServers"}

    def test_prompt_embeds_system_instructions(self, tmp_path: Path) -> None:
        args = GeminiBackend(settings_path=tmp_path / "s.json").build_args(_opts())
        assert args[0] == "[System Instructions]\nSYSTEM\n\n[Task]\nPROMPT"
        assert _flag_values(args, "--allowed-tools") == list(FEED_TOOL_NAMES)
        assert args[-2:] == ["--output-format", "stream-json"]

    def test_yolo_and_resume(self, tmp_path: Path) -> None:
        args = GeminiBackend(settings_path=tmp_path / "s.json").build_args(
            _opts(permission_mode=PermissionMode.yolo, session_id="g1"),
        )
        assert "--yolo" in args
        assert "--allowed-tools" not in args
        assert _flag_values(args, "--resume") == ["g1"]

    def test_parse_stream(self) -> None:
        backend = GeminiBackend()
        assert backend.parse_session_id('{"type":"init","session_id":"g1"}') == "g1"
        assert backend.parse_stream_text('{"type":"message","role":"assistant","content":"hi"}') == "hi"
        assert backend.parse_stream_text('{"type":"message","role":"user","content":"hi"}') is None


# ---------------------------------------------------------------------------
# Roster and helpers
# ---------------------------------------------------------------------------


class TestRuntimeEnv:
    def test_defaults_fill_missing(self) -> None:
        env = runtime_env({"PATH": "/bin", "HOME": "/home/a"})
        assert env["SHELL"] == "/bin/sh"
        assert env["LANG"] == "en_US.UTF-8"
        assert env["TERM"] == "xterm-256color"
        assert env["USER"] == ""


class TestBackendRoster:
    def test_first_registered_is_default(self, state_dir: Path) -> None:
        roster = BackendRoster()
        roster.register(make_entry(state_dir, BackendType.codex, "bot", "ag_1"))
        roster.register(make_entry(state_dir, BackendType.claude, "bot-claude", "ag_2"))
        assert roster.default.backend_type == BackendType.codex
        assert roster.available_backends() == [BackendType.codex, BackendType.claude]
        assert roster.identity_ids() == {"ag_1", "ag_2"}
        assert roster.owner_of("ag_2").backend_type == BackendType.claude
        assert roster.by_name("BOT-Claude").backend_type == BackendType.claude

    def test_lookup_errors(self, roster: BackendRoster) -> None:
        with pytest.raises(KeyError, match="not configured"):
            roster.get(BackendType.gemini)
        assert roster.find("gemini") is None
        assert roster.find("nonsense") is None

    def test_duplicate_rejected(self, roster: BackendRoster, state_dir: Path) -> None:
        with pytest.raises(ValueError, match="already registered"):
            roster.register(make_entry(state_dir))

    def test_empty_roster_has_no_default(self) -> None:
        with pytest.raises(LookupError):
            BackendRoster().default


class TestDetection:
    def test_create_backend(self) -> None:
        assert isinstance(create_backend("codex"), CodexBackend)
        with pytest.raises(ValueError):
            create_backend("copilot")

    def test_detect_installed(self) -> None:
        installed = {"claude": "/usr/bin/claude", "gemini": "/usr/bin/gemini"}
        assert detect_installed_backends(installed.get) == [BackendType.claude, BackendType.gemini]


class _ScriptBackend(FakeBackend):
    """Runs the current interpreter with a one-line script as the probe."""

    def __init__(self, script: str) -> None:
        super().__init__(BackendType.claude)
        self._script = script

    @property
    def binary_name(self) -> str:
        return sys.executable

    def probe_args(self) -> list[str]:
        return ["-c", self._script]


class TestProbe:
    @pytest.mark.asyncio
    async def test_quick_zero_exit_ok(self) -> None:
        assert await probe_backend(_ScriptBackend("pass")) is True

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self) -> None:
        assert await probe_backend(_ScriptBackend("raise SystemExit(3)")) is False

    @pytest.mark.asyncio
    async def test_still_running_counts_as_authenticated(self) -> None:
        backend = _ScriptBackend("import time; time.sleep(30)")
        assert await probe_backend(backend, timeout_s=0.5) is True

    @pytest.mark.asyncio
    async def test_missing_binary_fails(self) -> None:
        class Missing(FakeBackend):
            @property
            def binary_name(self) -> str:
                return "/nonexistent/agentfeed-cli"

        assert await probe_backend(Missing()) is False


class TestMigrateSessionFile:
    def test_copies_legacy_file_once(self, tmp_path: Path) -> None:
        (tmp_path / "sessions.json").write_text('{"default": "abc"}')
        assert migrate_session_file(tmp_path, BackendType.claude) is True
        assert (tmp_path / "sessions-claude.json").read_text() == '{"default": "abc"}'
        assert migrate_session_file(tmp_path, BackendType.claude) is False

    def test_nothing_to_migrate(self, tmp_path: Path) -> None:
        assert migrate_session_file(tmp_path, BackendType.codex) is False
