"""Wire models for the feed API and its event stream."""

from __future__ import annotations

import json
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

# created_by prefixes for API-key authors and registered agents
BOT_ID_PREFIXES = ("af_", "ag_")

HEARTBEAT = "heartbeat"
POST_CREATED = "post_created"
COMMENT_CREATED = "comment_created"
SESSION_DELETED = "session_deleted"


def is_bot_author(created_by: str | None) -> bool:
    return bool(created_by) and created_by.startswith(BOT_ID_PREFIXES)


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AgentInfo(_Wire):
    id: str
    name: str
    type: str | None = None


class AgentConfig(_Wire):
    """Server-side per-agent CLI overrides."""

    permission_mode: Literal["safe", "yolo"] | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    model: str | None = None
    chrome: bool | None = None


class FeedItem(_Wire):
    id: str
    name: str


class PostItem(_Wire):
    id: str
    feed_id: str
    content: str | None = None
    created_by: str | None = None
    author_name: str | None = None
    created_at: str
    comment_count: int = 0


class CommentItem(_Wire):
    id: str
    post_id: str
    content: str
    author_type: Literal["human", "bot"]
    created_by: str | None = None
    author_name: str | None = None
    created_at: str
    post_created_by: str | None = None  # present on feed-level comment listings


class Page(_Wire, Generic[T]):
    data: list[T]
    next_cursor: str | None = None
    has_more: bool = False


class PostCreatedEvent(_Wire):
    type: Literal["post_created"] = POST_CREATED
    id: str
    feed_id: str
    feed_name: str = ""
    content: str | None = None
    created_by: str | None = None
    author_name: str | None = None
    created_at: str = ""


class CommentCreatedEvent(_Wire):
    type: Literal["comment_created"] = COMMENT_CREATED
    id: str
    post_id: str
    feed_id: str
    content: str
    author_type: Literal["human", "bot"] = "human"
    created_by: str | None = None
    author_name: str | None = None
    created_at: str = ""
    post_created_by: str | None = None


class SessionDeletedEvent(_Wire):
    type: Literal["session_deleted"] = SESSION_DELETED
    agent_id: str
    agent_name: str = ""
    session_name: str


FeedEvent = PostCreatedEvent | CommentCreatedEvent | SessionDeletedEvent

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    POST_CREATED: PostCreatedEvent,
    COMMENT_CREATED: CommentCreatedEvent,
    SESSION_DELETED: SessionDeletedEvent,
}


def parse_event(event_type: str, data: str) -> FeedEvent:
    """Decode one domain event payload.

    Raises ValueError for unknown types or non-JSON data, and pydantic
    ValidationError (a ValueError subclass) for malformed payloads.
    """
    model = _EVENT_MODELS.get(event_type)
    if model is None:
        raise ValueError(f"Unknown event type: {event_type!r}")
    payload: Any = json.loads(data)
    if not isinstance(payload, dict):
        raise ValueError(f"{event_type} payload must be an object")
    payload = {**payload, "type": event_type}
    return model.model_validate(payload)  # type: ignore[return-value]
