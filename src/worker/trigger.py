"""Turn feed events into triggers for the configured backends.

Live rules, in priority order per event:

1. mention: ``@<identity>[/<session>]`` matched against every backend identity
   (fan-out), excluding a backend's own comments.
2. own_post_comment: a human comment on a post authored by one of our identities.
3. thread_follow_up: a human comment on a followed post; wakes every session that
   has participated there, or the default pair if none has yet.

Bot-authored comments only ever produce mentions.
"""

from __future__ import annotations

import functools
import re

from src.backends.base import BackendType
from src.backends.registry import BackendAgent, BackendRoster
from src.feed.models import CommentCreatedEvent, FeedEvent, PostCreatedEvent, is_bot_author
from src.store.follows import FollowStore
from src.store.post_sessions import PostSessionStore
from src.store.registry import AgentRegistryStore
from src.worker.models import DEFAULT_SESSION_NAME, SessionRef, Trigger, TriggerType

# Hyphens count as name characters so "@bot-codex" never matches "bot".
_NAME_BOUNDARY = r"(?![\w-])"


@functools.lru_cache(maxsize=64)
def _mention_pattern(name: str) -> re.Pattern[str]:
    return re.compile(
        rf"@{re.escape(name)}(?:/([\w-]+))?{_NAME_BOUNDARY}",
        re.IGNORECASE,
    )


def parse_mention(text: str | None, name: str) -> str | None:
    """Session name addressed by the first ``@name[/session]`` in text, or None."""
    if not text or not name:
        return None
    match = _mention_pattern(name).search(text)
    if match is None:
        return None
    return match.group(1) or DEFAULT_SESSION_NAME


def is_own_author(
    author_id: str | None,
    entry: BackendAgent,
    registry: AgentRegistryStore,
) -> bool:
    """True if author_id is the backend's identity or one of its session identities."""
    if not author_id:
        return False
    if author_id == entry.agent.id:
        return True
    name = registry.name_for(author_id)
    if name is None:
        return False
    base = entry.agent.name
    return name == base or name.startswith(f"{base}/")


def own_identity_ids(roster: BackendRoster, registry: AgentRegistryStore) -> set[str]:
    return roster.identity_ids() | registry.all_ids()


def resolve_post_owner(
    post_id: str,
    post_created_by: str | None,
    roster: BackendRoster,
    post_sessions: PostSessionStore,
    registry: AgentRegistryStore,
) -> SessionRef:
    """Session that should answer on one of our own posts.

    Order: the latest session recorded on the post, then the identity that wrote
    the post, then the default backend.
    """
    latest = post_sessions.get_latest(post_id)
    if latest is not None and roster.find(latest.backend_type) is not None:
        return latest

    owner = roster.owner_of(post_created_by)
    if owner is not None:
        return SessionRef(backend_type=owner.backend_type)

    name = registry.name_for(post_created_by) if post_created_by else None
    if name:
        base, _, session = name.partition("/")
        entry = roster.by_name(base)
        if entry is not None:
            return SessionRef(
                backend_type=entry.backend_type,
                session_name=session or DEFAULT_SESSION_NAME,
            )

    return SessionRef(backend_type=roster.default.backend_type)


def follow_up_targets(post_id: str, roster: BackendRoster, post_sessions: PostSessionStore) -> list[SessionRef]:
    refs = [r for r in post_sessions.get_all(post_id) if roster.find(r.backend_type) is not None]
    if refs:
        return refs
    return [SessionRef(backend_type=roster.default.backend_type)]


def _mention_targets(
    content: str | None,
    author_id: str | None,
    roster: BackendRoster,
    registry: AgentRegistryStore,
) -> tuple[list[SessionRef], bool]:
    """(targets, mentioned): mentioned is True even when every match was a self-mention."""
    targets: list[SessionRef] = []
    mentioned = False
    for entry in roster:
        session = parse_mention(content, entry.agent.name)
        if session is None:
            continue
        mentioned = True
        if is_own_author(author_id, entry, registry):
            continue
        targets.append(SessionRef(backend_type=entry.backend_type, session_name=session))
    return targets, mentioned


def _trigger(
    trigger_type: TriggerType,
    *,
    event_id: str,
    feed_id: str,
    post_id: str,
    content: str,
    author_name: str | None,
    author_is_bot: bool,
    target: SessionRef,
    feed_name: str = "",
) -> Trigger:
    return Trigger(
        trigger_type=trigger_type,
        event_id=event_id,
        feed_id=feed_id,
        feed_name=feed_name,
        post_id=post_id,
        content=content,
        author_name=author_name,
        author_is_bot=author_is_bot,
        session_name=target.session_name,
        backend_type=BackendType(target.backend_type),
    )


def detect_triggers(
    event: FeedEvent,
    roster: BackendRoster,
    follows: FollowStore,
    post_sessions: PostSessionStore,
    registry: AgentRegistryStore,
) -> list[Trigger]:
    """Triggers for one live event. May fan out to several backends or sessions."""
    if len(roster) == 0:
        return []
    if isinstance(event, PostCreatedEvent):
        return _post_triggers(event, roster, registry)
    if isinstance(event, CommentCreatedEvent):
        return _comment_triggers(event, roster, follows, post_sessions, registry)
    return []


def _post_triggers(
    event: PostCreatedEvent,
    roster: BackendRoster,
    registry: AgentRegistryStore,
) -> list[Trigger]:
    if not event.content:
        return []
    targets, _ = _mention_targets(event.content, event.created_by, roster, registry)
    return [
        _trigger(
            TriggerType.mention,
            event_id=event.id,
            feed_id=event.feed_id,
            feed_name=event.feed_name,
            post_id=event.id,
            content=event.content,
            author_name=event.author_name,
            author_is_bot=is_bot_author(event.created_by),
            target=target,
        )
        for target in targets
    ]


def _comment_triggers(
    event: CommentCreatedEvent,
    roster: BackendRoster,
    follows: FollowStore,
    post_sessions: PostSessionStore,
    registry: AgentRegistryStore,
) -> list[Trigger]:
    author_is_bot = event.author_type == "bot" or is_bot_author(event.created_by)

    def make(trigger_type: TriggerType, target: SessionRef) -> Trigger:
        return _trigger(
            trigger_type,
            event_id=event.id,
            feed_id=event.feed_id,
            post_id=event.post_id,
            content=event.content,
            author_name=event.author_name,
            author_is_bot=author_is_bot,
            target=target,
        )

    targets, mentioned = _mention_targets(event.content, event.created_by, roster, registry)
    if mentioned or author_is_bot:
        return [make(TriggerType.mention, t) for t in targets]

    own_ids = own_identity_ids(roster, registry)
    if event.post_created_by and event.post_created_by in own_ids:
        if event.created_by != event.post_created_by:
            owner = resolve_post_owner(
                event.post_id, event.post_created_by, roster, post_sessions, registry,
            )
            return [make(TriggerType.own_post_comment, owner)]
        return []

    if follows.has(event.post_id):
        return [
            make(TriggerType.thread_follow_up, target)
            for target in follow_up_targets(event.post_id, roster, post_sessions)
        ]
    return []
