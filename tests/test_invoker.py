"""Tests for the CLI invoker, driving the current interpreter as a stand-in CLI."""

from __future__ import annotations

import os
import sys

import pytest
from structlog.testing import capture_logs

from src.backends.base import BackendType, BuildArgsOptions, PermissionMode
from src.infra.errors import BackendNotFoundError
from src.worker.invoker import (
    TOOL_SERVER_MODULE,
    InvokeRequest,
    InvokeResult,
    Invoker,
    LineBuffer,
    OutputReader,
)
from tests.helpers import FakeBackend, make_trigger


class ScriptBackend(FakeBackend):
    """Runs ``python -c <script>``; the prompt is passed as argv[1]."""

    def __init__(self, script: str, binary: str = sys.executable) -> None:
        super().__init__(BackendType.claude)
        self._script = script
        self._binary = binary

    @property
    def binary_name(self) -> str:
        return self._binary

    def build_args(self, options: BuildArgsOptions) -> list[str]:
        self.built.append(options)
        return ["-c", self._script, options.prompt]


def _invoker(timeout_s: float = 30.0) -> Invoker:
    return Invoker(
        "https://feed.test/",
        "af_key",
        timeout_s=timeout_s,
        source_env={"PATH": os.environ.get("PATH", "")},
    )


# ---------------------------------------------------------------------------
# Line handling
# ---------------------------------------------------------------------------


class TestLineBuffer:
    def test_partial_lines_held_back(self) -> None:
        buf = LineBuffer()
        assert buf.feed(b"one\ntw") == ["one"]
        assert buf.feed(b"o\r\nthree") == ["two"]
        assert buf.flush() == ["three"]
        assert buf.flush() == []

    def test_multibyte_split_across_chunks(self) -> None:
        buf = LineBuffer()
        encoded = "안녕\n".encode()
        assert buf.feed(encoded[:2]) == []
        assert buf.feed(encoded[2:]) == ["안녕"]


class TestOutputReader:
    def test_captures_last_session_and_echoes_text(self) -> None:
        reader = OutputReader(FakeBackend())
        with capture_logs() as logs:
            reader.feed(b"session:s1\ntext:hello\n\nsession:s2")
            reader.close()
        assert reader.session_id == "s2"
        assert [e["text"] for e in logs if e["event"] == "agent_output"] == ["hello"]


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


class TestInvoke:
    @pytest.mark.asyncio
    async def test_new_session_captures_id(self) -> None:
        backend = ScriptBackend("print('session:abc'); print('text:hi')")
        result = await _invoker().invoke(backend, InvokeRequest(trigger=make_trigger(), agent_name="bot"))
        assert result == InvokeResult(exit_code=0, session_id="abc")
        assert result.ok

    @pytest.mark.asyncio
    async def test_child_environment_is_filtered(self) -> None:
        script = (
            "import os, sys\n"
            "assert os.environ['AGENTFEED_BASE_URL'] == 'https://feed.test/api'\n"
            "assert os.environ['AGENTFEED_AGENT_ID'] == 'ag_2'\n"
            "assert 'SECRET_TOKEN' not in os.environ\n"
            "assert sys.stdin.read() == ''\n"
        )
        os.environ["SECRET_TOKEN"] = "leak"
        try:
            invoker = Invoker("https://feed.test", "af_key")
            result = await invoker.invoke(
                ScriptBackend(script),
                InvokeRequest(trigger=make_trigger(), agent_name="bot", agent_id="ag_2"),
            )
        finally:
            del os.environ["SECRET_TOKEN"]
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_tool_server_registered_before_run(self) -> None:
        backend = ScriptBackend("pass")
        await _invoker().invoke(backend, InvokeRequest(trigger=make_trigger(), agent_name="bot"))
        spec = backend.tool_specs[0]
        assert spec.command == sys.executable
        assert spec.args == ("-m", TOOL_SERVER_MODULE)
        assert spec.env["AGENTFEED_API_KEY"] == "af_key"

    @pytest.mark.asyncio
    async def test_options_forwarded(self) -> None:
        backend = ScriptBackend("pass")
        request = InvokeRequest(
            trigger=make_trigger(content="ping"),
            agent_name="bot",
            permission_mode=PermissionMode.yolo,
            allowed_tools=["Read"],
            model="opus",
            chrome=True,
        )
        await _invoker().invoke(backend, request)
        options = backend.built[0]
        assert options.permission_mode == PermissionMode.yolo
        assert options.allowed_tools == ["Read"]
        assert options.model == "opus"
        assert options.chrome is True
        assert "ping" in options.prompt
        assert "SECURITY POLICY" not in options.system_prompt

    @pytest.mark.asyncio
    async def test_resume_keeps_session_and_reports_exit(self) -> None:
        backend = ScriptBackend("raise SystemExit(2)")
        result = await _invoker().invoke(
            backend, InvokeRequest(trigger=make_trigger(), agent_name="bot", session_id="old"),
        )
        assert result == InvokeResult(exit_code=2, session_id="old")
        assert not result.ok
        assert backend.built[0].session_id == "old"

    @pytest.mark.asyncio
    async def test_timeout_kills_child(self) -> None:
        backend = ScriptBackend("import time; print('session:slow', flush=True); time.sleep(30)")
        with capture_logs() as logs:
            result = await _invoker(timeout_s=1.0).invoke(
                backend, InvokeRequest(trigger=make_trigger(), agent_name="bot"),
            )
        assert result.timed_out is True
        assert result.exit_code != 0
        assert not result.ok
        assert any(e["event"] == "agent_timed_out" for e in logs)

    @pytest.mark.asyncio
    async def test_missing_binary(self) -> None:
        backend = ScriptBackend("pass", binary="/nonexistent/agentfeed-cli")
        with pytest.raises(BackendNotFoundError, match="command not found") as exc_info:
            await _invoker().invoke(backend, InvokeRequest(trigger=make_trigger(), agent_name="bot"))
        assert exc_info.value.code == "BACKEND_NOT_FOUND"
