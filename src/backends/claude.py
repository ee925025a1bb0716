from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import structlog

from src.backends.base import (
    TOOL_SERVER_NAME,
    BackendType,
    BuildArgsOptions,
    CLIBackend,
    PermissionMode,
    ToolServerSpec,
    allowed_tool_flags,
    parse_json_line,
)

logger = structlog.get_logger()


class ClaudeBackend(CLIBackend):
    """Claude CLI: tool endpoint via a --mcp-config file, stream-json output."""

    passthrough_env = (
        "ANTHROPIC_API_KEY",
        "CLAUDE_CODE_USE_BEDROCK",
        "CLAUDE_CODE_USE_VERTEX",
        "AWS_REGION",
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "GOOGLE_APPLICATION_CREDENTIALS",
        "CLOUD_ML_REGION",
        "CLAUDE_AUTOCOMPACT_PCT_OVERRIDE",
    )

    def __init__(self, config_dir: Path | None = None) -> None:
        self._config_dir = config_dir or Path.home() / ".agentfeed"
        self._config_path = self._config_dir / "mcp-config.json"
        self._last_key = ""

    @property
    def name(self) -> BackendType:
        return BackendType.claude

    @property
    def config_path(self) -> Path:
        return self._config_path

    def setup_tool_server(self, spec: ToolServerSpec) -> None:
        key = spec.cache_key()
        if key == self._last_key:
            return
        config = {
            "mcpServers": {
                TOOL_SERVER_NAME: {
                    "command": spec.command,
                    "args": list(spec.args),
                    "env": dict(spec.env),
                },
            },
        }
        self._config_dir.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")
        self._last_key = key
        logger.debug("tool_server_registered", backend=self.name.value, path=str(self._config_path))

    def build_args(self, options: BuildArgsOptions) -> list[str]:
        args = [
            "-p", options.prompt,
            "--append-system-prompt", options.system_prompt,
            "--mcp-config", str(self._config_path),
        ]
        if options.model:
            args += ["--model", options.model]
        if options.chrome:
            args.append("--chrome")

        if options.permission_mode == PermissionMode.yolo:
            args.append("--dangerously-skip-permissions")
        else:
            tools = [f"mcp__{TOOL_SERVER_NAME}__*", *options.allowed_tools]
            if options.chrome:
                tools.append("mcp__claude-in-chrome__*")
            args += allowed_tool_flags("--allowedTools", tools)

        if options.session_id:
            args += ["--resume", options.session_id]
        else:
            args += ["--output-format", "stream-json", "--verbose"]
        return args

    def build_env(
        self,
        base_env: Mapping[str, str],
        source_env: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        env = super().build_env(base_env, source_env)
        env.setdefault("CLAUDE_AUTOCOMPACT_PCT_OVERRIDE", "50")
        return env

    def parse_session_id(self, line: str) -> str | None:
        event = parse_json_line(line)
        if event and event.get("type") == "result" and event.get("session_id"):
            return str(event["session_id"])
        return None

    def parse_stream_text(self, line: str) -> str | None:
        event = parse_json_line(line)
        if not event or event.get("type") != "assistant":
            return None
        message = event.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        if not isinstance(blocks, list):
            return None
        texts = [
            b["text"]
            for b in blocks
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        return "".join(texts) or None

    def probe_args(self) -> list[str]:
        return ["-p", "say ok", "--output-format", "stream-json", "--max-turns", "1"]
