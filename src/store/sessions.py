"""Per-backend map of session name -> external CLI session id."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from src.store.persistent import JsonStore, expect_type


class SessionStore(JsonStore):
    def __init__(self, path: Path) -> None:
        self._sessions: dict[str, str] = {}
        super().__init__(path)

    def _serialize(self) -> Any:
        return dict(self._sessions)

    def _deserialize(self, data: Any) -> None:
        mapping = expect_type(data, dict, self.path)
        self._sessions = {str(k): str(v) for k, v in mapping.items() if v}

    def get(self, session_name: str) -> str | None:
        return self._sessions.get(session_name)

    def set(self, session_name: str, session_id: str) -> None:
        if self._sessions.get(session_name) == session_id:
            return
        self._sessions[session_name] = session_id
        self._save()

    def delete(self, session_name: str) -> bool:
        if session_name not in self._sessions:
            return False
        del self._sessions[session_name]
        self._save()
        return True

    def names(self) -> list[str]:
        return list(self._sessions)
