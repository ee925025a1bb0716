"""Test doubles and factories shared across test modules."""

from __future__ import annotations

from pathlib import Path

from src.backends.base import BackendType, BuildArgsOptions, CLIBackend, ToolServerSpec
from src.backends.registry import BackendAgent
from src.feed.models import AgentInfo
from src.store import SessionStore
from src.worker.models import Trigger, TriggerType


class FakeBackend(CLIBackend):
    """Records calls; output lines are plain ``session:<id>`` / ``text:<msg>``."""

    def __init__(self, backend_type: BackendType = BackendType.claude) -> None:
        self._type = backend_type
        self.tool_specs: list[ToolServerSpec] = []
        self.built: list[BuildArgsOptions] = []

    @property
    def name(self) -> BackendType:
        return self._type

    def setup_tool_server(self, spec: ToolServerSpec) -> None:
        self.tool_specs.append(spec)

    def build_args(self, options: BuildArgsOptions) -> list[str]:
        self.built.append(options)
        return [options.prompt]

    def parse_session_id(self, line: str) -> str | None:
        return line.removeprefix("session:") if line.startswith("session:") else None

    def parse_stream_text(self, line: str) -> str | None:
        return line.removeprefix("text:") if line.startswith("text:") else None


def make_trigger(**overrides) -> Trigger:
    fields = {
        "trigger_type": TriggerType.mention,
        "event_id": "cm_1",
        "feed_id": "fd_1",
        "post_id": "ps_1",
        "content": "@bot hello",
        "author_name": "alice",
        "backend_type": BackendType.claude,
    }
    fields.update(overrides)
    return Trigger(**fields)


def make_entry(
    state_dir: Path,
    backend_type: BackendType = BackendType.claude,
    name: str = "bot",
    agent_id: str = "ag_bot",
    backend: CLIBackend | None = None,
) -> BackendAgent:
    return BackendAgent(
        backend_type=backend_type,
        backend=backend or FakeBackend(backend_type),
        agent=AgentInfo(id=agent_id, name=name, type=backend_type.value),
        session_store=SessionStore(state_dir / f"sessions-{backend_type.value}.json"),
    )


