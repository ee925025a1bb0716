"""Worker process: identities, startup sweep, live event stream, shutdown.

Usage::

    agentfeed-worker [--permission safe|yolo] [--allowed-tools TOOL ...] [--backend TYPE ...]
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from collections.abc import Callable, Sequence

import httpx
import structlog
from pydantic import ValidationError

from src.backends.base import BackendType, PermissionMode
from src.backends.registry import (
    BackendAgent,
    BackendRoster,
    create_backend,
    detect_installed_backends,
    migrate_session_file,
    probe_backend,
)
from src.config.settings import Settings, get_settings
from src.feed.client import FeedClient
from src.feed.models import SESSION_DELETED, SessionDeletedEvent, parse_event
from src.feed.stream import EventStreamClient, StreamEvent
from src.infra.errors import ConfigError, FeedAPIError
from src.infra.logging import setup_logging
from src.store import AgentRegistryStore, FollowStore, PostSessionStore, QueueStore, SessionStore
from src.worker.dispatcher import Dispatcher
from src.worker.invoker import Invoker
from src.worker.scanner import Scanner
from src.worker.trigger import detect_triggers

logger = structlog.get_logger()

YOLO_WARNING = """
  YOLO mode enabled. The agent can do literally anything.
     No prompt sandboxing. No trust boundaries.
     Prompt injection? Not your problem today.
"""


def identity_name(agent_name: str, index: int, backend_type: BackendType) -> str:
    """First backend takes the bare agent name; the others are suffixed with their type."""
    return agent_name if index == 0 else f"{agent_name}-{backend_type.value}"


def stream_url(feed_url: str, author_type: str = "") -> str:
    url = f"{feed_url.rstrip('/')}/api/events/stream"
    return f"{url}?author_type={author_type}" if author_type else url


def confirm_yolo(read: Callable[[str], str] = input) -> bool:
    print(YOLO_WARNING, file=sys.stderr)
    try:
        answer = read("  Continue? (y/N): ")
    except EOFError:
        return False
    return answer.strip().lower() == "y"


def resolve_backend_types(
    configured: Sequence[str],
    detect: Callable[[], list[BackendType]] = detect_installed_backends,
) -> list[BackendType]:
    """Configured backends in the given order, else whatever CLIs are installed."""
    if configured:
        types: list[BackendType] = []
        for name in configured:
            backend_type = BackendType(name)
            if backend_type not in types:
                types.append(backend_type)
        return types
    return detect()


async def probe_backends(types: Sequence[BackendType]) -> list[BackendType]:
    """Installed CLIs that answer a minimal prompt; probed concurrently."""
    results = await asyncio.gather(*(probe_backend(create_backend(t)) for t in types))
    usable: list[BackendType] = []
    for backend_type, ok in zip(types, results, strict=True):
        if ok:
            usable.append(backend_type)
        else:
            logger.warning("backend_unusable", backend=backend_type.value)
    return usable


class WorkerApp:
    """Wires stores, roster, dispatcher and stream together for one worker process."""

    def __init__(
        self,
        settings: Settings,
        *,
        permission_mode: PermissionMode,
        allowed_tools: list[str],
        backend_types: list[BackendType],
        client: FeedClient | None = None,
        stream_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._permission_mode = permission_mode
        self._backend_types = backend_types
        self._stream_transport = stream_transport
        self._client = client or FeedClient(
            settings.feed.url,
            settings.feed.api_key,
            timeout_s=settings.feed.request_timeout_s,
        )

        store = settings.store
        self.queue = QueueStore(store.queue_path())
        self.follows = FollowStore(store.follow_path())
        self.post_sessions = PostSessionStore(store.post_session_path())
        self.registry = AgentRegistryStore(store.registry_path())
        self.roster = BackendRoster()

        self.scanner = Scanner(
            self._client, self.roster, self.follows, self.post_sessions, self.registry,
        )
        self.dispatcher = Dispatcher(
            client=self._client,
            roster=self.roster,
            queue=self.queue,
            follows=self.follows,
            post_sessions=self.post_sessions,
            registry=self.registry,
            invoker=Invoker(
                settings.feed.url,
                settings.feed.api_key,
                timeout_s=settings.dispatch.agent_timeout_s,
            ),
            scanner=self.scanner,
            settings=settings.dispatch,
            permission_mode=permission_mode,
            allowed_tools=allowed_tools,
        )
        self._stream: EventStreamClient | None = None

    async def register_backends(self) -> None:
        """Register one feed identity per backend and load its server-side config."""
        agent_name = self._settings.feed.agent_name
        state_dir = self._settings.store.state_dir
        for index, backend_type in enumerate(self._backend_types):
            name = identity_name(agent_name, index, backend_type)
            agent = await self._client.register_agent(name, backend_type.value)
            self.registry.set(agent.name, agent.id)

            migrate_session_file(state_dir, backend_type)
            entry = BackendAgent(
                backend_type=backend_type,
                backend=create_backend(backend_type),
                agent=agent,
                session_store=SessionStore(self._settings.store.session_path(backend_type.value)),
            )
            try:
                entry.config = await self._client.get_agent_config(agent.id)
            except FeedAPIError as exc:
                logger.warning("agent_config_fetch_failed", agent=agent.name, error=str(exc))
            self.roster.register(entry)
            logger.info(
                "backend_registered",
                backend=backend_type.value,
                agent=agent.name,
                agent_id=agent.id,
                default=index == 0,
            )

    async def start(self) -> None:
        await self.register_backends()

        logger.info("startup_scan_started")
        try:
            found = await self.scanner.scan_unprocessed()
        except FeedAPIError as exc:
            logger.warning("startup_scan_failed", error=str(exc))
            found = []
        # Leftovers from a previous run are already in the queue
        self.dispatcher.submit(found)

        self._stream = EventStreamClient(
            stream_url(self._settings.feed.url, self._settings.feed.stream_author_type),
            self._settings.feed.api_key,
            self.handle_event,
            settings=self._settings.stream,
            transport=self._stream_transport,
        )
        self._stream.start()
        logger.info(
            "worker_ready",
            backends=[b.value for b in self.roster.available_backends()],
            permission=self._permission_mode.value,
        )

    def handle_event(self, raw: StreamEvent) -> None:
        """Single delivery path for stream events. Malformed payloads are logged and dropped."""
        try:
            event = parse_event(raw.type, raw.data)
        except ValueError as exc:
            logger.warning("stream_event_malformed", type=raw.type, event_id=raw.id, error=str(exc))
            return

        if isinstance(event, SessionDeletedEvent):
            self.handle_session_deleted(event)
            return

        triggers = detect_triggers(event, self.roster, self.follows, self.post_sessions, self.registry)
        if triggers:
            self.dispatcher.submit(triggers)

    def handle_session_deleted(self, event: SessionDeletedEvent) -> None:
        entry = self.roster.owner_of(event.agent_id)
        if entry is None:
            name = self.registry.name_for(event.agent_id) or ""
            entry = self.roster.by_name(name.partition("/")[0]) if name else None
        if entry is None:
            logger.debug("session_deleted_ignored", agent_id=event.agent_id)
            return
        entry.session_store.delete(event.session_name)
        removed = self.post_sessions.remove_session(event.session_name, entry.backend_type)
        logger.info(
            SESSION_DELETED,
            backend=entry.backend_type.value,
            session_name=event.session_name,
            post_records_removed=removed,
        )

    async def close(self) -> None:
        """Close the stream and stop scheduling. Running CLIs are not killed."""
        self.dispatcher.close()
        if self._stream is not None:
            await self._stream.close()
        await self._client.aclose()
        logger.info("worker_stopped")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agentfeed-worker",
        description="Wake coding agents when they are mentioned on the feed",
    )
    parser.add_argument(
        "--permission", choices=("safe", "yolo"), default=None,
        help="safe (default): sandboxed prompt, feed tools only. yolo: no restrictions",
    )
    parser.add_argument(
        "--allowed-tools", nargs="+", default=None, metavar="TOOL",
        help="Extra tool patterns allowed in safe mode",
    )
    parser.add_argument(
        "--backend", nargs="+", choices=[b.value for b in BackendType], default=None,
        help="Backends to run (default: every installed CLI)",
    )
    return parser.parse_args(argv)


async def run(settings: Settings, args: argparse.Namespace) -> int:
    permission = PermissionMode(args.permission or settings.worker.permission_mode)
    if permission == PermissionMode.yolo and not confirm_yolo():
        print("Cancelled. Run without --permission yolo for safe mode.", file=sys.stderr)
        return 0

    allowed_tools = args.allowed_tools if args.allowed_tools is not None else settings.worker.allowed_tool_list
    configured = args.backend or settings.worker.backend_list
    backend_types = resolve_backend_types(configured)
    if not configured:
        backend_types = await probe_backends(backend_types)
    if not backend_types:
        logger.error("no_backends_available", hint="install claude, codex or gemini, or pass --backend")
        return 1

    logger.info(
        "worker_starting",
        permission=permission.value,
        allowed_tools=allowed_tools,
        backends=[b.value for b in backend_types],
    )
    app = WorkerApp(
        settings,
        permission_mode=permission,
        allowed_tools=allowed_tools,
        backend_types=backend_types,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await app.start()
        await stop.wait()
        logger.info("worker_shutdown_requested")
    except FeedAPIError as exc:
        logger.error("worker_startup_failed", error=str(exc), code=exc.code)
        return 1
    finally:
        await app.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 1
    setup_logging(
        json_output=settings.worker.json_logs,
        log_level=settings.worker.log_level,
        agent_name=settings.feed.agent_name,
    )
    try:
        return asyncio.run(run(settings, args))
    except ConfigError as exc:
        logger.error("worker_config_invalid", error=str(exc))
        return 1
