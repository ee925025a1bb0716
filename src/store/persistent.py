"""Durable JSON store base: load-on-construct, write-through on every mutation.

Absent or corrupt files start empty and are never fatal. Writes go to a temp file
in the same directory and are renamed into place, so a crash mid-write leaves the
previous document intact. All stores are mutated from the single scheduling flow,
so no locking is done here.
"""

from __future__ import annotations

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from src.infra.errors import StoreError

logger = structlog.get_logger()


class JsonStore(ABC):
    """Abstract persistence primitive for one JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @abstractmethod
    def _serialize(self) -> Any:
        """Return a JSON-compatible snapshot of the store contents."""
        ...

    @abstractmethod
    def _deserialize(self, data: Any) -> None:
        """Replace in-memory state from a decoded document. Raise StoreError on bad shape."""
        ...

    def _load(self) -> None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except UnicodeDecodeError as exc:
            logger.warning("store_corrupt_reset", path=str(self._path), error=str(exc))
            return
        except OSError:
            logger.warning("store_read_failed", path=str(self._path), exc_info=True)
            return
        if not raw.strip():
            return
        try:
            self._deserialize(json.loads(raw))
        except (json.JSONDecodeError, StoreError, TypeError, ValueError) as exc:
            logger.warning("store_corrupt_reset", path=str(self._path), error=str(exc))
            self._deserialize(self._empty())

    def _empty(self) -> Any:
        """Decoded form of an empty document for this store."""
        return {}

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._serialize(), f, indent=2, ensure_ascii=False)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError:
            logger.exception("store_save_failed", path=str(self._path))


def expect_type(data: Any, expected: type, path: Path) -> Any:
    """Guard a decoded document's top-level shape."""
    if not isinstance(data, expected):
        raise StoreError(
            f"{path}: expected {expected.__name__}, got {type(data).__name__}",
            code="STORE_CORRUPT",
        )
    return data
