"""Name -> feed identity id registry for backend and per-session agents."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from src.store.persistent import JsonStore, expect_type


class AgentRegistryStore(JsonStore):
    def __init__(self, path: Path) -> None:
        self._agents: dict[str, str] = {}
        super().__init__(path)

    def _serialize(self) -> Any:
        return dict(self._agents)

    def _deserialize(self, data: Any) -> None:
        mapping = expect_type(data, dict, self.path)
        self._agents = {str(k): str(v) for k, v in mapping.items() if v}

    def get(self, name: str) -> str | None:
        return self._agents.get(name)

    def set(self, name: str, agent_id: str) -> None:
        if self._agents.get(name) == agent_id:
            return
        self._agents[name] = agent_id
        self._save()

    def delete(self, name: str) -> bool:
        if name not in self._agents:
            return False
        del self._agents[name]
        self._save()
        return True

    def all_ids(self) -> set[str]:
        return set(self._agents.values())

    def name_for(self, agent_id: str) -> str | None:
        for name, known_id in self._agents.items():
            if known_id == agent_id:
                return name
        return None
