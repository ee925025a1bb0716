"""Backend roster: one BackendAgent per configured CLI, plus install detection."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

import structlog

from src.backends.base import BackendType, CLIBackend, runtime_env
from src.backends.claude import ClaudeBackend
from src.backends.codex import CodexBackend
from src.backends.gemini import GeminiBackend
from src.feed.models import AgentConfig, AgentInfo
from src.store.sessions import SessionStore

logger = structlog.get_logger()

PROBE_TIMEOUT_S = 10.0

_FACTORIES: dict[BackendType, Callable[[], CLIBackend]] = {
    BackendType.claude: ClaudeBackend,
    BackendType.codex: CodexBackend,
    BackendType.gemini: GeminiBackend,
}


def create_backend(backend_type: BackendType | str) -> CLIBackend:
    """Instantiate the adapter for a backend type. Raises ValueError if unknown."""
    return _FACTORIES[BackendType(backend_type)]()


@dataclass
class BackendAgent:
    """A configured CLI together with its feed identity and session map."""

    backend_type: BackendType
    backend: CLIBackend
    agent: AgentInfo
    session_store: SessionStore
    config: AgentConfig | None = None


class BackendRoster:
    """Ordered set of BackendAgents. The first registered entry is the default.

    Built at startup and not mutated afterwards, apart from config refreshes.
    """

    def __init__(self) -> None:
        self._agents: dict[BackendType, BackendAgent] = {}

    def register(self, entry: BackendAgent) -> None:
        if entry.backend_type in self._agents:
            raise ValueError(f"Backend '{entry.backend_type}' already registered")
        self._agents[entry.backend_type] = entry

    def get(self, backend_type: BackendType | str) -> BackendAgent:
        """Raises KeyError if the backend is not configured."""
        key = BackendType(backend_type)
        if key not in self._agents:
            msg = f"Backend '{key}' not configured"
            raise KeyError(msg)
        return self._agents[key]

    def find(self, backend_type: BackendType | str) -> BackendAgent | None:
        try:
            return self.get(backend_type)
        except (KeyError, ValueError):
            return None

    @property
    def default(self) -> BackendAgent:
        if not self._agents:
            raise LookupError("No backends configured")
        return next(iter(self._agents.values()))

    def available_backends(self) -> list[BackendType]:
        return list(self._agents.keys())

    def identity_ids(self) -> set[str]:
        return {entry.agent.id for entry in self._agents.values()}

    def owner_of(self, agent_id: str | None) -> BackendAgent | None:
        """Backend whose own identity is agent_id."""
        if not agent_id:
            return None
        for entry in self._agents.values():
            if entry.agent.id == agent_id:
                return entry
        return None

    def by_name(self, name: str) -> BackendAgent | None:
        """Backend whose identity name matches, case-insensitively."""
        lowered = name.lower()
        for entry in self._agents.values():
            if entry.agent.name.lower() == lowered:
                return entry
        return None

    def __iter__(self) -> Iterator[BackendAgent]:
        return iter(list(self._agents.values()))

    def __len__(self) -> int:
        return len(self._agents)


def detect_installed_backends(
    which: Callable[[str], str | None] = shutil.which,
) -> list[BackendType]:
    """Backend types whose CLI binary is on PATH, in canonical order."""
    found = []
    for backend_type in BackendType:
        if which(create_backend(backend_type).binary_name):
            found.append(backend_type)
    return found


async def probe_backend(
    backend: CLIBackend,
    *,
    timeout_s: float = PROBE_TIMEOUT_S,
    source_env: Mapping[str, str] | None = None,
) -> bool:
    """Check a CLI is usable by running a minimal prompt.

    Still running at the limit counts as authenticated (an API call is in flight);
    a quick zero exit is ok; anything else, including a missing binary, is not.
    """
    env = backend.build_env(runtime_env(source_env), source_env)
    try:
        proc = await asyncio.create_subprocess_exec(
            backend.binary_name,
            *backend.probe_args(),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.warning("backend_probe_spawn_failed", backend=backend.name.value, error=str(exc))
        return False

    try:
        code = await asyncio.wait_for(proc.wait(), timeout=timeout_s)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        await proc.wait()
        logger.info("backend_probe_ok", backend=backend.name.value, reason="still_running")
        return True

    ok = code == 0
    logger.info(
        "backend_probe_ok" if ok else "backend_probe_failed",
        backend=backend.name.value,
        exit_code=code,
    )
    return ok


def migrate_session_file(state_dir: Path, backend_type: BackendType | str) -> bool:
    """Copy a legacy single-backend sessions.json to sessions-<type>.json once.

    Returns True if a file was migrated. Failures are logged, never raised.
    """
    legacy = state_dir / "sessions.json"
    target = state_dir / f"sessions-{BackendType(backend_type).value}.json"
    if target.exists() or not legacy.exists():
        return False
    try:
        shutil.copyfile(legacy, target)
    except OSError as exc:
        logger.warning("session_file_migration_failed", target=str(target), error=str(exc))
        return False
    logger.info("session_file_migrated", source=str(legacy), target=str(target))
    return True
