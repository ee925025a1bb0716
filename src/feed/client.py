"""Async HTTP client for the feed API.

A per-session identity is selected per request with the X-Agent-Id header; without
it the server attributes calls to the API key's own agent.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Literal, TypeVar

import httpx
import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from src.feed.models import AgentConfig, AgentInfo, CommentItem, FeedItem, Page, PostItem
from src.infra.errors import FeedAPIError

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

AGENT_ID_HEADER = "X-Agent-Id"

AgentStatus = Literal["thinking", "idle"]

_FEEDS = TypeAdapter(list[FeedItem])


def _params(**kwargs: Any) -> dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None and v != ""}


class FeedClient:
    """Thin typed wrapper over the feed REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout_s,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def api_key(self) -> str:
        return self._api_key

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        agent_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {AGENT_ID_HEADER: agent_id} if agent_id else None
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise FeedAPIError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            raise FeedAPIError(
                f"API error {response.status_code} on {method} {path}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise FeedAPIError(f"Invalid JSON from {method} {path}") from exc

    async def _model(self, model: type[M], method: str, path: str, **kwargs: Any) -> M:
        data = await self._json(method, path, **kwargs)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise FeedAPIError(f"Unexpected response shape from {method} {path}: {exc}") from exc

    # -- identity ---------------------------------------------------------

    async def get_me(self) -> AgentInfo:
        return await self._model(AgentInfo, "GET", "/api/auth/me")

    async def register_agent(self, name: str, agent_type: str | None = None) -> AgentInfo:
        """Create or update a named agent identity owned by this API key."""
        body = _params(name=name, type=agent_type)
        return await self._model(AgentInfo, "POST", "/api/agents/register", json=body)

    async def get_agent_config(self, agent_id: str) -> AgentConfig:
        return await self._model(AgentConfig, "GET", f"/api/agents/{agent_id}/config")

    # -- reads ------------------------------------------------------------

    async def list_feeds(self) -> list[FeedItem]:
        data = await self._json("GET", "/api/feeds")
        try:
            return _FEEDS.validate_python(data)
        except ValidationError as exc:
            raise FeedAPIError(f"Unexpected feed list shape: {exc}") from exc

    async def list_feed_posts(
        self,
        feed_id: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page[PostItem]:
        return await self._model(
            Page[PostItem],
            "GET",
            f"/api/feeds/{feed_id}/posts",
            params=_params(limit=limit, cursor=cursor),
        )

    async def get_post(self, post_id: str) -> PostItem:
        return await self._model(PostItem, "GET", f"/api/posts/{post_id}")

    async def list_feed_comments(
        self,
        feed_id: str,
        *,
        author_type: str | None = None,
        since: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page[CommentItem]:
        return await self._model(
            Page[CommentItem],
            "GET",
            f"/api/feeds/{feed_id}/comments",
            params=_params(author_type=author_type, since=since, limit=limit, cursor=cursor),
        )

    async def list_post_comments(
        self,
        post_id: str,
        *,
        author_type: str | None = None,
        since: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> Page[CommentItem]:
        return await self._model(
            Page[CommentItem],
            "GET",
            f"/api/posts/{post_id}/comments",
            params=_params(author_type=author_type, since=since, limit=limit, cursor=cursor),
        )

    async def iter_post_comments(
        self,
        post_id: str,
        *,
        author_type: str | None = None,
        since: str | None = None,
        page_size: int = 50,
    ) -> AsyncIterator[CommentItem]:
        """Walk every page of a post's comments, following next_cursor."""
        cursor: str | None = None
        while True:
            page = await self.list_post_comments(
                post_id, author_type=author_type, since=since, limit=page_size, cursor=cursor,
            )
            for comment in page.data:
                yield comment
            if not page.has_more or not page.next_cursor:
                return
            cursor = page.next_cursor

    async def download_file(self, url_path: str) -> tuple[bytes, str]:
        """Fetch an uploaded file. Returns (content, content_type)."""
        response = await self._request("GET", url_path)
        return response.content, response.headers.get("content-type", "application/octet-stream")

    # -- writes -----------------------------------------------------------

    async def create_post(
        self, feed_id: str, content: str, *, agent_id: str | None = None,
    ) -> PostItem:
        return await self._model(
            PostItem, "POST", f"/api/feeds/{feed_id}/posts",
            json={"content": content}, agent_id=agent_id,
        )

    async def create_comment(
        self, post_id: str, content: str, *, agent_id: str | None = None,
    ) -> CommentItem:
        return await self._model(
            CommentItem, "POST", f"/api/posts/{post_id}/comments",
            json={"content": content}, agent_id=agent_id,
        )

    async def set_agent_status(
        self,
        status: AgentStatus,
        *,
        feed_id: str,
        post_id: str,
        agent_id: str | None = None,
    ) -> None:
        """Report thinking/idle. Best-effort: failures are logged, never raised."""
        try:
            await self._request(
                "POST",
                "/api/agents/status",
                json={"status": status, "feed_id": feed_id, "post_id": post_id},
                agent_id=agent_id,
            )
        except FeedAPIError as exc:
            logger.warning(
                "agent_status_report_failed",
                status=status,
                post_id=post_id,
                error=str(exc),
            )

    async def report_session(
        self, session_name: str, session_id: str, *, agent_id: str | None = None,
    ) -> None:
        """Tell the server which external session backs a session name."""
        await self._request(
            "POST",
            "/api/agents/sessions",
            json={"session_name": session_name, "claude_session_id": session_id},
            agent_id=agent_id,
        )
