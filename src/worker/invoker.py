"""Run one backend CLI invocation to completion.

New sessions are read line by line so the session id can be captured and
assistant text echoed live; resumed sessions write straight to the worker's
stdout. Every invocation has a hard wall-clock limit after which the child is
killed and the result is marked timed out.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field

import structlog

from src.backends.base import (
    BuildArgsOptions,
    CLIBackend,
    PermissionMode,
    ToolServerSpec,
    runtime_env,
)
from src.infra.errors import BackendNotFoundError, InvocationError
from src.worker.models import Trigger
from src.worker.prompt import PromptBuilder

logger = structlog.get_logger()

TOOL_SERVER_MODULE = "src.tools.feed_server"
_READ_CHUNK = 64 * 1024


@dataclass
class InvokeRequest:
    trigger: Trigger
    agent_name: str
    recent_context: str = ""
    permission_mode: PermissionMode = PermissionMode.safe
    allowed_tools: list[str] = field(default_factory=list)
    session_id: str | None = None  # resume this external session
    agent_id: str | None = None  # feed identity the tool endpoint acts as
    model: str | None = None
    chrome: bool = False


@dataclass
class InvokeResult:
    exit_code: int
    session_id: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class LineBuffer:
    """Split a byte stream into complete lines, holding back any partial tail."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.split(b"\n")
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        if not self._pending:
            return []
        line = self._pending.decode("utf-8", errors="replace").rstrip("\r")
        self._pending = b""
        return [line]


class OutputReader:
    """Feed structured output lines through a backend's parsers."""

    def __init__(self, backend: CLIBackend) -> None:
        self._backend = backend
        self._buffer = LineBuffer()
        self.session_id: str | None = None

    def feed(self, chunk: bytes) -> None:
        for line in self._buffer.feed(chunk):
            self._handle(line)

    def close(self) -> None:
        for line in self._buffer.flush():
            self._handle(line)

    def _handle(self, line: str) -> None:
        if not line.strip():
            return
        session_id = self._backend.parse_session_id(line)
        if session_id:
            self.session_id = session_id
        text = self._backend.parse_stream_text(line)
        if text:
            logger.info("agent_output", backend=self._backend.name.value, text=text)


def tool_server_spec(feed_env: Mapping[str, str]) -> ToolServerSpec:
    return ToolServerSpec(
        command=sys.executable,
        args=("-m", TOOL_SERVER_MODULE),
        env=dict(feed_env),
    )


class Invoker:
    def __init__(
        self,
        server_url: str,
        api_key: str,
        *,
        timeout_s: float = 300.0,
        source_env: Mapping[str, str] | None = None,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._source_env = source_env

    def feed_env(self, agent_id: str | None = None) -> dict[str, str]:
        """Variables the tool endpoint needs to call the feed as agent_id."""
        env = {
            "AGENTFEED_BASE_URL": f"{self._server_url}/api",
            "AGENTFEED_API_KEY": self._api_key,
        }
        if agent_id:
            env["AGENTFEED_AGENT_ID"] = agent_id
        return env

    async def invoke(self, backend: CLIBackend, request: InvokeRequest) -> InvokeResult:
        """Spawn the CLI and wait for it, or for the timeout.

        Raises BackendNotFoundError if the binary is not installed.
        """
        prompts = PromptBuilder(request.permission_mode)
        feed_env = self.feed_env(request.agent_id)
        backend.setup_tool_server(tool_server_spec(feed_env))

        args = backend.build_args(
            BuildArgsOptions(
                prompt=prompts.build_prompt(request.trigger, request.agent_name, request.recent_context),
                system_prompt=prompts.build_system_prompt(),
                permission_mode=request.permission_mode,
                session_id=request.session_id,
                allowed_tools=list(request.allowed_tools),
                model=request.model,
                chrome=request.chrome,
            )
        )
        env = backend.build_env({**feed_env, **runtime_env(self._source_env)}, self._source_env)
        new_session = request.session_id is None

        log = logger.bind(
            backend=backend.name.value,
            post_id=request.trigger.post_id,
            session_name=request.trigger.session_name,
        )
        log.info("agent_invoking", resume=not new_session)

        try:
            proc = await asyncio.create_subprocess_exec(
                backend.binary_name,
                *args,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if new_session else None,
            )
        except FileNotFoundError as exc:
            msg = f"'{backend.binary_name}' command not found. Please install the {backend.name} CLI."
            raise BackendNotFoundError(msg) from exc

        reader = OutputReader(backend)
        try:
            if new_session:
                await asyncio.wait_for(self._pump(proc, reader), timeout=self._timeout_s)
            else:
                await asyncio.wait_for(proc.wait(), timeout=self._timeout_s)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            log.warning("agent_timed_out", timeout_s=self._timeout_s)
            return InvokeResult(
                exit_code=proc.returncode if proc.returncode is not None else -1,
                session_id=reader.session_id or request.session_id,
                timed_out=True,
            )

        exit_code = proc.returncode if proc.returncode is not None else 1
        log.info("agent_exited", exit_code=exit_code)
        return InvokeResult(exit_code=exit_code, session_id=reader.session_id or request.session_id)

    @staticmethod
    async def _pump(proc: asyncio.subprocess.Process, reader: OutputReader) -> None:
        if proc.stdout is None:
            raise InvocationError("child stdout is not piped")
        while chunk := await proc.stdout.read(_READ_CHUNK):
            reader.feed(chunk)
        reader.close()
        await proc.wait()
