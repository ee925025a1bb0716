"""Stdio tool endpoint that lets an agent CLI read and write the feed.

Launched by the CLI itself (see the backend adapters); configured entirely from
the environment the worker registers:

- AGENTFEED_BASE_URL: feed API root, e.g. https://feed.example.com/api
- AGENTFEED_API_KEY: bearer key
- AGENTFEED_AGENT_ID: optional identity to act as (per-session agents)
"""

from __future__ import annotations

import json
import os
from typing import Any, Literal

import structlog
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.utilities.types import Image

from src.feed.client import FeedClient
from src.infra.errors import ConfigError, FeedAPIError
from src.infra.logging import setup_logging

logger = structlog.get_logger()

SERVER_NAME = "agentfeed"
DEFAULT_LIMIT = 20


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def server_root(base_url: str) -> str:
    """Feed origin from the API root the CLI was given."""
    root = base_url.rstrip("/")
    return root.removesuffix("/api")


def resolve_upload_path(url: str, root: str) -> str:
    """Map an upload URL to a path on the feed server.

    Only the feed's own files are fetched, since the request carries the API key.
    """
    if url.startswith("/"):
        return url
    if url.startswith(root + "/"):
        return url[len(root):]
    raise ToolError(f"Refusing to download from outside the feed server: {url}")


def build_server(client: FeedClient, agent_id: str | None = None) -> FastMCP:
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool()
    async def agentfeed_get_feeds() -> str:
        """List all feeds."""
        try:
            feeds = await client.list_feeds()
        except FeedAPIError as exc:
            raise ToolError(str(exc)) from exc
        return _dump([f.model_dump() for f in feeds])

    @mcp.tool()
    async def agentfeed_get_posts(feed_id: str, limit: int = DEFAULT_LIMIT) -> str:
        """Get posts from a feed.

        Args:
            feed_id: Feed ID
            limit: Max number of posts
        """
        try:
            page = await client.list_feed_posts(feed_id, limit=limit)
        except FeedAPIError as exc:
            raise ToolError(str(exc)) from exc
        return _dump(page.model_dump())

    @mcp.tool()
    async def agentfeed_get_post(post_id: str) -> str:
        """Get a single post by ID."""
        try:
            post = await client.get_post(post_id)
        except FeedAPIError as exc:
            raise ToolError(str(exc)) from exc
        return _dump(post.model_dump())

    @mcp.tool()
    async def agentfeed_create_post(feed_id: str, content: str) -> str:
        """Create a new post in a feed.

        Args:
            feed_id: Feed ID
            content: Post content (markdown supported)
        """
        try:
            post = await client.create_post(feed_id, content, agent_id=agent_id)
        except FeedAPIError as exc:
            raise ToolError(str(exc)) from exc
        return _dump(post.model_dump())

    @mcp.tool()
    async def agentfeed_get_comments(
        post_id: str,
        since: str | None = None,
        author_type: Literal["human", "bot"] | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> str:
        """Get comments on a post.

        Args:
            post_id: Post ID
            since: ISO 8601 timestamp; only return comments after this time
            author_type: Filter by author type
            limit: Max number of comments
        """
        try:
            page = await client.list_post_comments(
                post_id, since=since, author_type=author_type, limit=limit,
            )
        except FeedAPIError as exc:
            raise ToolError(str(exc)) from exc
        return _dump(page.model_dump())

    @mcp.tool()
    async def agentfeed_post_comment(post_id: str, content: str) -> str:
        """Post a comment on a post.

        Args:
            post_id: Post ID
            content: Comment content (markdown supported, Korean OK)
        """
        try:
            comment = await client.create_comment(post_id, content, agent_id=agent_id)
        except FeedAPIError as exc:
            raise ToolError(str(exc)) from exc
        return f"Comment posted: {comment.id}"

    @mcp.tool()
    async def agentfeed_download_file(url: str) -> Image | str:
        """Download a file from feed uploads. Images are returned so you can see them.

        Use this when content contains image URLs like ![name](/api/uploads/up_xxx.png).

        Args:
            url: File URL (e.g. /api/uploads/up_xxx.png or full URL)
        """
        path = resolve_upload_path(url, server_root(client.base_url))
        try:
            data, content_type = await client.download_file(path)
        except FeedAPIError as exc:
            raise ToolError(str(exc)) from exc
        mime = content_type.split(";")[0].strip()
        if mime.startswith("image/"):
            return Image(data=data, format=mime.removeprefix("image/"))
        return (
            f"File downloaded: {url}\nType: {content_type}\nSize: {len(data)} bytes\n"
            "(Non-image files cannot be displayed inline)"
        )

    @mcp.tool()
    async def agentfeed_set_status(
        status: Literal["thinking", "idle"], feed_id: str, post_id: str,
    ) -> str:
        """Report agent status (thinking/idle)."""
        await client.set_agent_status(status, feed_id=feed_id, post_id=post_id, agent_id=agent_id)
        return f"Status set to: {status}"

    return mcp


def client_from_env(environ: dict[str, str] | None = None) -> tuple[FeedClient, str | None]:
    env = os.environ if environ is None else environ
    base_url = env.get("AGENTFEED_BASE_URL", "")
    api_key = env.get("AGENTFEED_API_KEY", "")
    if not base_url or not api_key:
        raise ConfigError("AGENTFEED_BASE_URL and AGENTFEED_API_KEY must be set")
    return FeedClient(server_root(base_url), api_key), env.get("AGENTFEED_AGENT_ID") or None


def main() -> None:
    # stdout carries the protocol; logs go to stderr
    setup_logging(json_output=True, log_level=os.environ.get("AGENTFEED_TOOL_LOG_LEVEL", "WARNING"))
    client, agent_id = client_from_env()
    logger.info("tool_server_starting", agent_id=agent_id)
    build_server(client, agent_id).run(transport="stdio")


if __name__ == "__main__":
    main()
