from __future__ import annotations

import json

from src.backends.base import (
    TOOL_SERVER_NAME,
    BackendType,
    BuildArgsOptions,
    CLIBackend,
    PermissionMode,
    ToolServerSpec,
    parse_json_line,
)


class CodexBackend(CLIBackend):
    """Codex CLI: tool endpoint and system prompt passed as -c config overrides.

    Nothing is written to disk; the registered endpoint is replayed into every
    argument vector.
    """

    passthrough_env = ("CODEX_API_KEY", "OPENAI_API_KEY", "OPENAI_BASE_URL")

    def __init__(self) -> None:
        self._spec: ToolServerSpec | None = None

    @property
    def name(self) -> BackendType:
        return BackendType.codex

    def setup_tool_server(self, spec: ToolServerSpec) -> None:
        if self._spec == spec:
            return
        self._spec = spec

    def build_args(self, options: BuildArgsOptions) -> list[str]:
        args = ["exec"]

        if self._spec is not None:
            # Dot-notation struct overrides; JSON strings are rejected for tables
            prefix = f"mcp_servers.{TOOL_SERVER_NAME}"
            args += ["-c", f"{prefix}.command={self._spec.command}"]
            args += ["-c", f"{prefix}.args={json.dumps(list(self._spec.args))}"]
            for key, value in self._spec.env.items():
                args += ["-c", f"{prefix}.env.{key}={value}"]

        args += ["-c", f"instructions={json.dumps(options.system_prompt)}"]
        if options.model:
            args += ["-m", options.model]

        if options.permission_mode == PermissionMode.yolo:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args.append("--full-auto")

        args += ["--json", "--skip-git-repo-check"]

        # resume must follow all flags
        if options.session_id:
            args += ["resume", options.session_id]
        args.append(options.prompt)
        return args

    def parse_session_id(self, line: str) -> str | None:
        event = parse_json_line(line)
        if event and event.get("type") == "thread.started" and event.get("thread_id"):
            return str(event["thread_id"])
        return None

    def parse_stream_text(self, line: str) -> str | None:
        event = parse_json_line(line)
        if not event or event.get("type") != "item.completed":
            return None
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message" and item.get("text"):
            return str(item["text"])
        return None

    def probe_args(self) -> list[str]:
        return ["exec", "--json", "--skip-git-repo-check", "--full-auto", "say ok"]
