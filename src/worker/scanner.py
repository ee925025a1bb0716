"""Reconciliation sweep: recover triggers missed while the worker was busy or offline.

Unlike the live path, a sweep emits at most one trigger per post (mention, then
own-post comment, then follow-up) and only when no bot has replied since the
latest human comment.
"""

from __future__ import annotations

import structlog

from src.backends.base import BackendType
from src.backends.registry import BackendRoster
from src.feed.client import FeedClient
from src.feed.models import CommentItem, FeedItem, is_bot_author
from src.infra.errors import FeedAPIError
from src.store.follows import FollowStore
from src.store.post_sessions import PostSessionStore
from src.store.registry import AgentRegistryStore
from src.worker.models import SessionRef, Trigger, TriggerType
from src.worker.trigger import (
    follow_up_targets,
    is_own_author,
    own_identity_ids,
    parse_mention,
    resolve_post_owner,
)

logger = structlog.get_logger()

SCAN_PAGE_SIZE = 50


class Scanner:
    def __init__(
        self,
        client: FeedClient,
        roster: BackendRoster,
        follows: FollowStore,
        post_sessions: PostSessionStore,
        registry: AgentRegistryStore,
        *,
        page_size: int = SCAN_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._roster = roster
        self._follows = follows
        self._post_sessions = post_sessions
        self._registry = registry
        self._page_size = page_size

    async def scan_unprocessed(self) -> list[Trigger]:
        """Sweep every feed. A feed that fails to load is logged and skipped."""
        if len(self._roster) == 0:
            return []
        triggers: list[Trigger] = []
        for feed in await self._client.list_feeds():
            try:
                triggers.extend(await self._scan_feed(feed))
            except FeedAPIError as exc:
                logger.warning("scan_feed_failed", feed_id=feed.id, error=str(exc))
        if triggers:
            logger.info("scan_found_unprocessed", count=len(triggers))
        return triggers

    async def _scan_feed(self, feed: FeedItem) -> list[Trigger]:
        triggers: list[Trigger] = []
        resolved: set[str] = set()

        page = await self._client.list_feed_comments(
            feed.id, author_type="human", limit=self._page_size,
        )
        by_post: dict[str, list[CommentItem]] = {}
        for comment in page.data:
            by_post.setdefault(comment.post_id, []).append(comment)

        for post_id, comments in by_post.items():
            picked = self._pick_comment_trigger(post_id, comments)
            if picked is None:
                continue
            trigger_type, comment, target = picked
            latest = comments[-1]
            replies = await self._client.list_post_comments(
                post_id, since=latest.created_at, author_type="bot", limit=1,
            )
            if replies.data:
                continue
            triggers.append(
                Trigger(
                    trigger_type=trigger_type,
                    event_id=comment.id,
                    feed_id=feed.id,
                    feed_name=feed.name,
                    post_id=post_id,
                    content=comment.content,
                    author_name=comment.author_name,
                    session_name=target.session_name,
                    backend_type=BackendType(target.backend_type),
                )
            )
            resolved.add(post_id)

        posts = await self._client.list_feed_posts(feed.id, limit=self._page_size)
        for post in posts.data:
            if post.id in resolved or is_bot_author(post.created_by) or not post.content:
                continue
            target = self._first_mention(post.content, post.created_by)
            if target is None:
                continue
            replies = await self._client.list_post_comments(post.id, author_type="bot", limit=1)
            if replies.data:
                continue
            triggers.append(
                Trigger(
                    trigger_type=TriggerType.mention,
                    event_id=post.id,
                    feed_id=feed.id,
                    feed_name=feed.name,
                    post_id=post.id,
                    content=post.content,
                    author_name=post.author_name,
                    session_name=target.session_name,
                    backend_type=BackendType(target.backend_type),
                )
            )
        return triggers

    def _first_mention(self, content: str, author_id: str | None) -> SessionRef | None:
        for entry in self._roster:
            session = parse_mention(content, entry.agent.name)
            if session is not None and not is_own_author(author_id, entry, self._registry):
                return SessionRef(backend_type=entry.backend_type, session_name=session)
        return None

    def _pick_comment_trigger(
        self, post_id: str, comments: list[CommentItem],
    ) -> tuple[TriggerType, CommentItem, SessionRef] | None:
        """Highest-priority trigger for a post's human comments (oldest first).

        A later mention supersedes an earlier one.
        """
        own_ids = own_identity_ids(self._roster, self._registry)
        best: tuple[TriggerType, CommentItem, SessionRef] | None = None
        for comment in comments:
            target = self._first_mention(comment.content, comment.created_by)
            if target is not None:
                best = (TriggerType.mention, comment, target)
            elif best is None and comment.post_created_by in own_ids:
                owner = resolve_post_owner(
                    post_id, comment.post_created_by, self._roster,
                    self._post_sessions, self._registry,
                )
                best = (TriggerType.own_post_comment, comment, owner)

        if best is None and self._follows.has(post_id):
            target = follow_up_targets(post_id, self._roster, self._post_sessions)[-1]
            best = (TriggerType.thread_follow_up, comments[-1], target)
        return best
