from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class BackendType(StrEnum):
    claude = "claude"
    codex = "codex"
    gemini = "gemini"


class PermissionMode(StrEnum):
    """safe: sandboxed prompt + allow-listed tools. yolo: no restrictions."""

    safe = "safe"
    yolo = "yolo"


# Tool endpoint name as seen by every CLI ("mcp__agentfeed__*" etc.)
TOOL_SERVER_NAME = "agentfeed"

# Feed tools exposed by the tool endpoint, minus set_status (the worker reports status itself)
FEED_TOOL_NAMES = (
    "agentfeed_get_feeds",
    "agentfeed_get_posts",
    "agentfeed_get_post",
    "agentfeed_create_post",
    "agentfeed_get_comments",
    "agentfeed_post_comment",
    "agentfeed_download_file",
)


@dataclass
class BuildArgsOptions:
    """Inputs for building one CLI argument vector."""

    prompt: str
    system_prompt: str
    permission_mode: PermissionMode = PermissionMode.safe
    session_id: str | None = None  # resume an existing external session
    allowed_tools: list[str] = field(default_factory=list)
    model: str | None = None
    chrome: bool = False


@dataclass(frozen=True)
class ToolServerSpec:
    """How the CLI should launch the feed tool endpoint."""

    command: str
    args: tuple[str, ...]
    env: Mapping[str, str]

    def cache_key(self) -> str:
        return json.dumps(
            {"command": self.command, "args": list(self.args), "env": dict(self.env)},
            sort_keys=True,
        )


class CLIBackend(ABC):
    """Adapter contract implemented once per external agent CLI.

    Variants differ only syntactically: flag spellings, how the system prompt is
    embedded, and the shape of the structured output stream.
    """

    #: Environment variables forwarded from the worker's own environment.
    passthrough_env: tuple[str, ...] = ()

    @property
    @abstractmethod
    def name(self) -> BackendType:
        """Backend discriminant."""
        ...

    @property
    def binary_name(self) -> str:
        """Executable looked up on PATH."""
        return self.name.value

    @abstractmethod
    def setup_tool_server(self, spec: ToolServerSpec) -> None:
        """Register the feed tool endpoint with the CLI. Skips work if nothing changed."""
        ...

    @abstractmethod
    def build_args(self, options: BuildArgsOptions) -> list[str]:
        """Build the CLI argument vector (binary excluded)."""
        ...

    def build_env(
        self,
        base_env: Mapping[str, str],
        source_env: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Filtered child environment: base_env plus allow-listed credentials only."""
        source = os.environ if source_env is None else source_env
        env = dict(base_env)
        for key in self.passthrough_env:
            value = source.get(key)
            if value:
                env[key] = value
        return env

    @abstractmethod
    def parse_session_id(self, line: str) -> str | None:
        """Extract a freshly minted session id from one output line, if present."""
        ...

    @abstractmethod
    def parse_stream_text(self, line: str) -> str | None:
        """Extract human-readable assistant text from one output line, if present."""
        ...

    def probe_args(self) -> list[str]:
        """Minimal invocation used to check the CLI is installed and authenticated."""
        return []


def parse_json_line(line: str) -> dict[str, Any] | None:
    """Best-effort decode of one structured output line. Non-objects yield None."""
    try:
        event = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    return event if isinstance(event, dict) else None


def allowed_tool_flags(flag: str, tools: Sequence[str]) -> list[str]:
    args: list[str] = []
    for tool in tools:
        args.extend([flag, tool])
    return args


def runtime_env(source_env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Minimal process environment every child CLI starts from."""
    source = os.environ if source_env is None else source_env
    return {
        "PATH": source.get("PATH", ""),
        "HOME": source.get("HOME", ""),
        "USER": source.get("USER", ""),
        "SHELL": source.get("SHELL") or "/bin/sh",
        "LANG": source.get("LANG") or "en_US.UTF-8",
        "TERM": source.get("TERM") or "xterm-256color",
    }
