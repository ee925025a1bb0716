"""Per-post record of every (backend_type, session_name) that has replied on it.

Used to decide who to re-wake on a follow-up comment. Entries are kept in
participation order; the most recent participant is last.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import ValidationError

from src.infra.errors import StoreError
from src.store.persistent import JsonStore, expect_type
from src.worker.models import SessionRef


class PostSessionStore(JsonStore):
    def __init__(self, path: Path) -> None:
        self._posts: dict[str, list[SessionRef]] = {}
        super().__init__(path)

    def _serialize(self) -> Any:
        return {
            post_id: [ref.model_dump(mode="json") for ref in refs]
            for post_id, refs in self._posts.items()
        }

    def _deserialize(self, data: Any) -> None:
        mapping = expect_type(data, dict, self.path)
        posts: dict[str, list[SessionRef]] = {}
        try:
            for post_id, refs in mapping.items():
                posts[str(post_id)] = [
                    SessionRef.model_validate(ref) for ref in expect_type(refs, list, self.path)
                ]
        except ValidationError as exc:
            raise StoreError(f"invalid post session entry: {exc}", code="STORE_CORRUPT") from exc
        self._posts = posts

    def add(self, post_id: str, ref: SessionRef) -> None:
        """Record participation; re-adding moves the pair to most-recent."""
        refs = [r for r in self._posts.get(post_id, []) if r != ref]
        refs.append(ref)
        if self._posts.get(post_id) == refs:
            return
        self._posts[post_id] = refs
        self._save()

    def get_all(self, post_id: str) -> list[SessionRef]:
        return list(self._posts.get(post_id, []))

    def get_latest(self, post_id: str) -> SessionRef | None:
        refs = self._posts.get(post_id)
        return refs[-1] if refs else None

    def remove_session(self, session_name: str, backend_type: str | None = None) -> int:
        """Forget a deleted session everywhere. Returns number of entries removed."""
        removed = 0
        for post_id in list(self._posts):
            kept = [
                r
                for r in self._posts[post_id]
                if not (
                    r.session_name == session_name
                    and (backend_type is None or r.backend_type == backend_type)
                )
            ]
            removed += len(self._posts[post_id]) - len(kept)
            if kept:
                self._posts[post_id] = kept
            else:
                del self._posts[post_id]
        if removed:
            self._save()
        return removed
