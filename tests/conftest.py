"""Shared fixtures: temp-dir stores and a one-backend roster."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.backends.registry import BackendRoster
from src.store import AgentRegistryStore, FollowStore, PostSessionStore, QueueStore
from tests.helpers import make_entry


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / "state"
    d.mkdir()
    return d


@pytest.fixture
def roster(state_dir: Path) -> BackendRoster:
    """Single claude backend whose identity is ``bot`` (ag_bot)."""
    r = BackendRoster()
    r.register(make_entry(state_dir))
    return r


@pytest.fixture
def follows(state_dir: Path) -> FollowStore:
    return FollowStore(state_dir / "followed-posts.json")


@pytest.fixture
def post_sessions(state_dir: Path) -> PostSessionStore:
    return PostSessionStore(state_dir / "post-sessions.json")


@pytest.fixture
def registry(state_dir: Path) -> AgentRegistryStore:
    return AgentRegistryStore(state_dir / "agent-registry.json")


@pytest.fixture
def queue(state_dir: Path) -> QueueStore:
    return QueueStore(state_dir / "queue.json")
