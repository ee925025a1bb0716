from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from src.backends.base import (
    FEED_TOOL_NAMES,
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


class GeminiBackend(CLIBackend):
    """Gemini CLI: tool endpoint merged into settings.json, system prompt inlined."""

    passthrough_env = (
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "GOOGLE_CLOUD_PROJECT",
        "GOOGLE_CLOUD_PROJECT_ID",
        "GOOGLE_CLOUD_LOCATION",
        "GOOGLE_APPLICATION_CREDENTIALS",
        "GOOGLE_GENAI_USE_VERTEXAI",
    )

    def __init__(self, settings_path: Path | None = None) -> None:
        self._settings_path = settings_path or Path.home() / ".gemini" / "settings.json"
        self._last_key = ""

    @property
    def name(self) -> BackendType:
        return BackendType.gemini

    def _read_settings(self) -> dict[str, Any]:
        try:
            data = json.loads(self._settings_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("gemini_settings_unreadable", path=str(self._settings_path))
            return {}
        return data if isinstance(data, dict) else {}

    def setup_tool_server(self, spec: ToolServerSpec) -> None:
        key = spec.cache_key()
        if key == self._last_key:
            return
        settings = self._read_settings()
        servers = settings.get("mcpServers")
        servers = dict(servers) if isinstance(servers, dict) else {}
        servers[TOOL_SERVER_NAME] = {
            "command": spec.command,
            "args": list(spec.args),
            "env": dict(spec.env),
        }
        settings["mcpServers"] = servers
        self._settings_path.parent.mkdir(parents=True, exist_ok=True)
        self._settings_path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
        self._last_key = key
        logger.debug("tool_server_registered", backend=self.name.value, path=str(self._settings_path))

    def build_args(self, options: BuildArgsOptions) -> list[str]:
        # No system-prompt flag: embed it ahead of the task
        full_prompt = f"[System Instructions]\n{options.system_prompt}\n\n[Task]\n{options.prompt}"
        args = [full_prompt]
        if options.session_id:
            args += ["--resume", options.session_id]
        if options.model:
            args += ["--model", options.model]

        if options.permission_mode == PermissionMode.yolo:
            args.append("--yolo")
        else:
            args += allowed_tool_flags("--allowed-tools", [*FEED_TOOL_NAMES, *options.allowed_tools])

        args += ["--output-format", "stream-json"]
        return args

    def parse_session_id(self, line: str) -> str | None:
        event = parse_json_line(line)
        if event and event.get("type") == "init" and event.get("session_id"):
            return str(event["session_id"])
        return None

    def parse_stream_text(self, line: str) -> str | None:
        event = parse_json_line(line)
        if (
            event
            and event.get("type") == "message"
            and event.get("role") == "assistant"
            and event.get("content")
        ):
            return str(event["content"])
        return None

    def probe_args(self) -> list[str]:
        return ["say ok", "--output-format", "stream-json"]
