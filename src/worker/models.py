from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from src.backends.base import BackendType

DEFAULT_SESSION_NAME = "default"


class TriggerType(StrEnum):
    mention = "mention"
    own_post_comment = "own_post_comment"
    thread_follow_up = "thread_follow_up"


class Trigger(BaseModel):
    """A unit of pending work: an agent should respond to this content.

    event_id is the dedup/retry key. (backend_type, session_name) is the session
    key: at most one invocation per key runs at a time.
    """

    model_config = ConfigDict(frozen=True)

    trigger_type: TriggerType
    event_id: str
    feed_id: str
    feed_name: str = ""
    post_id: str
    content: str
    author_name: str | None = None
    author_is_bot: bool = False
    session_name: str = DEFAULT_SESSION_NAME
    backend_type: BackendType

    @property
    def session_key(self) -> str:
        return f"{self.backend_type.value}:{self.session_name}"


class SessionRef(BaseModel):
    """One (backend_type, session_name) pair that has replied on a post."""

    model_config = ConfigDict(frozen=True)

    backend_type: BackendType
    session_name: str = DEFAULT_SESSION_NAME
