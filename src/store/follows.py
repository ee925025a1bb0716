"""Set of followed posts: any later human comment re-wakes participating agents."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from src.store.persistent import JsonStore, expect_type


class FollowStore(JsonStore):
    def __init__(self, path: Path) -> None:
        self._posts: set[str] = set()
        super().__init__(path)

    def _empty(self) -> Any:
        return []

    def _serialize(self) -> Any:
        return sorted(self._posts)

    def _deserialize(self, data: Any) -> None:
        self._posts = {str(p) for p in expect_type(data, list, self.path)}

    def has(self, post_id: str) -> bool:
        return post_id in self._posts

    def add(self, post_id: str) -> bool:
        if post_id in self._posts:
            return False
        self._posts.add(post_id)
        self._save()
        return True

    def all(self) -> list[str]:
        return sorted(self._posts)
