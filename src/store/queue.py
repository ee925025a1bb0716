"""Persisted, deduplicating list of pending triggers."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from src.infra.errors import StoreError
from src.store.persistent import JsonStore, expect_type
from src.worker.models import Trigger

logger = structlog.get_logger()


class QueueStore(JsonStore):
    """Pending-trigger queue, written through to disk on every mutation.

    push() is idempotent on event_id: a trigger whose event is already queued is
    dropped, whatever its session. A newer event for the same (post_id, backend_type) replaces the
    older pending one, so only the latest request per post per backend survives.
    """

    def __init__(self, path: Path) -> None:
        self._queue: list[Trigger] = []
        super().__init__(path)

    def _empty(self) -> Any:
        return []

    def _serialize(self) -> Any:
        return [t.model_dump(mode="json") for t in self._queue]

    def _deserialize(self, data: Any) -> None:
        items = expect_type(data, list, self.path)
        queue: list[Trigger] = []
        for item in items:
            try:
                queue.append(Trigger.model_validate(item))
            except ValidationError as exc:
                raise StoreError(f"invalid queue entry: {exc}", code="STORE_CORRUPT") from exc
        self._queue = queue

    def push(self, trigger: Trigger) -> bool:
        """Queue a trigger. Returns False if it was a duplicate and dropped."""
        for queued in self._queue:
            if queued.event_id == trigger.event_id:
                return False
        self._queue = [
            t
            for t in self._queue
            if not (t.post_id == trigger.post_id and t.backend_type == trigger.backend_type)
        ]
        self._queue.append(trigger)
        self._save()
        return True

    def drain(self) -> list[Trigger]:
        """Empty the queue and persist the (empty) remainder."""
        items = self._queue
        self._queue = []
        self._save()
        return items

    def __len__(self) -> int:
        return len(self._queue)

    def snapshot(self) -> list[Trigger]:
        return list(self._queue)
