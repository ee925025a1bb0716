from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import; every BaseSettings subclass sees the env vars
load_dotenv()

PERMISSION_MODES = ("safe", "yolo")
BACKEND_TYPES = ("claude", "codex", "gemini")


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


class FeedSettings(BaseSettings):
    """Feed server connection settings. Env vars prefixed with AGENTFEED_."""

    model_config = SettingsConfigDict(env_prefix="AGENTFEED_")

    url: str  # required, fail fast if missing
    api_key: str  # required
    agent_name: str = Field(default_factory=lambda: Path.cwd().name)
    request_timeout_s: float = Field(30.0, gt=0)
    stream_author_type: str = ""  # empty = receive human and bot events

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"AGENTFEED_URL must be an http(s) URL (got '{v}')")
        return v

    @field_validator("stream_author_type")
    @classmethod
    def _validate_author_type(cls, v: str) -> str:
        if v not in ("", "human", "bot"):
            raise ValueError(
                f"AGENTFEED_STREAM_AUTHOR_TYPE must be '', 'human' or 'bot' (got '{v}')"
            )
        return v


class StoreSettings(BaseSettings):
    """Durable state file locations. Env vars prefixed with AGENTFEED_."""

    model_config = SettingsConfigDict(env_prefix="AGENTFEED_")

    state_dir: Path = Path.home() / ".agentfeed"
    queue_file: Path | None = None
    follow_file: Path | None = None
    post_session_file: Path | None = None
    registry_file: Path | None = None

    def queue_path(self) -> Path:
        return self.queue_file or self.state_dir / "queue.json"

    def follow_path(self) -> Path:
        return self.follow_file or self.state_dir / "followed-posts.json"

    def post_session_path(self) -> Path:
        return self.post_session_file or self.state_dir / "post-sessions.json"

    def registry_path(self) -> Path:
        return self.registry_file or self.state_dir / "agent-registry.json"

    def session_path(self, backend_type: str) -> Path:
        return self.state_dir / f"sessions-{backend_type}.json"


class DispatchSettings(BaseSettings):
    """Scheduling limits. Env vars prefixed with DISPATCH_."""

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")

    max_concurrent: int = Field(5, gt=0)
    max_wake_attempts: int = Field(3, gt=0)
    max_crash_retries: int = Field(3, gt=0)
    max_bot_mentions_per_post: int = Field(4, gt=0)
    bot_mention_window_s: float = Field(600.0, gt=0)
    retry_delay_s: float = Field(3.0, gt=0)
    agent_timeout_s: float = Field(300.0, gt=0)  # 5 minutes wall clock per invocation
    context_limit: int = Field(10, gt=0)


class StreamSettings(BaseSettings):
    """Event stream reconnect and replay-dedup settings. Env vars prefixed with STREAM_."""

    model_config = SettingsConfigDict(env_prefix="STREAM_")

    backoff_initial_s: float = Field(1.0, gt=0)
    backoff_max_s: float = Field(60.0, gt=0)
    backoff_reset_after_s: float = Field(30.0, gt=0)
    dedup_window_s: float = Field(300.0, gt=0)

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.backoff_initial_s > self.backoff_max_s:
            raise ValueError(
                f"backoff_initial_s ({self.backoff_initial_s}) must not exceed "
                f"backoff_max_s ({self.backoff_max_s})"
            )
        return self


class WorkerSettings(BaseSettings):
    """Worker runtime settings. Env vars prefixed with WORKER_."""

    model_config = SettingsConfigDict(env_prefix="WORKER_")

    permission_mode: str = "safe"
    allowed_tools: str = ""  # comma-separated extra tool patterns
    backends: str = ""  # comma-separated; empty = auto-detect installed CLIs
    log_level: str = "INFO"
    json_logs: bool = False

    @field_validator("permission_mode")
    @classmethod
    def _validate_permission_mode(cls, v: str) -> str:
        if v not in PERMISSION_MODES:
            msg = f"WORKER_PERMISSION_MODE must be one of {PERMISSION_MODES} (got '{v}')"
            raise ValueError(msg)
        return v

    @field_validator("backends")
    @classmethod
    def _validate_backends(cls, v: str) -> str:
        unknown = [b for b in _split_csv(v) if b not in BACKEND_TYPES]
        if unknown:
            msg = f"WORKER_BACKENDS contains unknown backend(s) {unknown}; allowed: {BACKEND_TYPES}"
            raise ValueError(msg)
        return v

    @property
    def allowed_tool_list(self) -> list[str]:
        return _split_csv(self.allowed_tools)

    @property
    def backend_list(self) -> list[str]:
        return _split_csv(self.backends)


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    feed: FeedSettings = Field(default_factory=FeedSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on missing required fields."""
    return Settings()
