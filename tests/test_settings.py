"""Tests for the layered worker settings."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.config.settings import (
    DispatchSettings,
    FeedSettings,
    StoreSettings,
    StreamSettings,
    WorkerSettings,
)


class TestFeedSettings:
    def test_required_fields_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("AGENTFEED_URL", "https://feed.example.com/")
        monkeypatch.setenv("AGENTFEED_API_KEY", "af_key")
        s = FeedSettings()
        assert s.url == "https://feed.example.com"
        assert s.api_key == "af_key"

    def test_missing_url_fails_fast(self, monkeypatch) -> None:
        monkeypatch.delenv("AGENTFEED_URL", raising=False)
        monkeypatch.setenv("AGENTFEED_API_KEY", "af_key")
        with pytest.raises(ValidationError):
            FeedSettings()

    def test_non_http_url_rejected(self) -> None:
        with pytest.raises(ValidationError, match="must be an http"):
            FeedSettings(url="feed.example.com", api_key="k")

    def test_agent_name_defaults_to_cwd(self, monkeypatch, tmp_path: Path) -> None:
        project = tmp_path / "my-project"
        project.mkdir()
        monkeypatch.chdir(project)
        monkeypatch.delenv("AGENTFEED_AGENT_NAME", raising=False)
        s = FeedSettings(url="http://localhost:3000", api_key="k")
        assert s.agent_name == "my-project"

    def test_stream_author_type_validated(self) -> None:
        with pytest.raises(ValidationError, match="STREAM_AUTHOR_TYPE"):
            FeedSettings(url="http://x", api_key="k", stream_author_type="robot")


class TestStoreSettings:
    def test_default_paths_under_state_dir(self, tmp_path: Path) -> None:
        s = StoreSettings(state_dir=tmp_path)
        assert s.queue_path() == tmp_path / "queue.json"
        assert s.follow_path() == tmp_path / "followed-posts.json"
        assert s.post_session_path() == tmp_path / "post-sessions.json"
        assert s.registry_path() == tmp_path / "agent-registry.json"
        assert s.session_path("codex") == tmp_path / "sessions-codex.json"

    def test_explicit_file_overrides(self, tmp_path: Path) -> None:
        s = StoreSettings(state_dir=tmp_path, queue_file=tmp_path / "q.json")
        assert s.queue_path() == tmp_path / "q.json"


class TestDispatchSettings:
    def test_defaults(self) -> None:
        s = DispatchSettings()
        assert s.max_concurrent == 5
        assert s.max_wake_attempts == 3
        assert s.max_crash_retries == 3
        assert s.max_bot_mentions_per_post == 4
        assert s.retry_delay_s == 3.0
        assert s.agent_timeout_s == 300.0
        assert s.context_limit == 10

    def test_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("DISPATCH_MAX_CONCURRENT", "2")
        assert DispatchSettings().max_concurrent == 2

    def test_zero_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DispatchSettings(max_concurrent=0)


class TestStreamSettings:
    def test_defaults(self) -> None:
        s = StreamSettings()
        assert (s.backoff_initial_s, s.backoff_max_s) == (1.0, 60.0)
        assert s.backoff_reset_after_s == 30.0
        assert s.dedup_window_s == 300.0

    def test_initial_above_max_rejected(self) -> None:
        with pytest.raises(ValidationError, match="must not exceed"):
            StreamSettings(backoff_initial_s=90, backoff_max_s=60)


class TestWorkerSettings:
    def test_defaults(self) -> None:
        s = WorkerSettings()
        assert s.permission_mode == "safe"
        assert s.allowed_tool_list == []
        assert s.backend_list == []

    def test_csv_lists(self) -> None:
        s = WorkerSettings(allowed_tools="Bash(git *), Read", backends="codex,claude")
        assert s.allowed_tool_list == ["Bash(git *)", "Read"]
        assert s.backend_list == ["codex", "claude"]

    def test_invalid_permission_mode(self) -> None:
        with pytest.raises(ValidationError, match="WORKER_PERMISSION_MODE"):
            WorkerSettings(permission_mode="reckless")

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValidationError, match="unknown backend"):
            WorkerSettings(backends="claude,copilot")
