"""Scheduling core: queue → admission → invocation → release → re-scan.

Scheduling passes are synchronous and run on the event loop thread, so only one
pass evaluates the queue at a time. Admitted triggers run as independent tasks,
bounded by a global ceiling, and strictly serialized per session key
(backend_type:session_name) through the running-key set.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable, Iterable

import structlog
from structlog.typing import FilteringBoundLogger

from src.backends.base import PermissionMode
from src.backends.registry import BackendAgent, BackendRoster
from src.config.settings import DispatchSettings
from src.feed.client import FeedClient
from src.feed.models import CommentItem
from src.infra.errors import BackendNotFoundError, FeedAPIError, InvocationError
from src.store.follows import FollowStore
from src.store.post_sessions import PostSessionStore
from src.store.queue import QueueStore
from src.store.registry import AgentRegistryStore
from src.worker.invoker import InvokeRequest, Invoker
from src.worker.models import DEFAULT_SESSION_NAME, SessionRef, Trigger, TriggerType
from src.worker.prompt import format_context
from src.worker.scanner import Scanner

logger = structlog.get_logger()


class Dispatcher:
    """Owns all per-process scheduling state: running keys, attempt and loop counters."""

    def __init__(
        self,
        *,
        client: FeedClient,
        roster: BackendRoster,
        queue: QueueStore,
        follows: FollowStore,
        post_sessions: PostSessionStore,
        registry: AgentRegistryStore,
        invoker: Invoker,
        scanner: Scanner | None = None,
        settings: DispatchSettings | None = None,
        permission_mode: PermissionMode = PermissionMode.safe,
        allowed_tools: list[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._roster = roster
        self._queue = queue
        self._follows = follows
        self._post_sessions = post_sessions
        self._registry = registry
        self._invoker = invoker
        self._scanner = scanner
        self._settings = settings or DispatchSettings()
        self._permission_mode = permission_mode
        self._allowed_tools = list(allowed_tools or [])
        self._clock = clock

        self._running: set[str] = set()
        # event_id -> admitted dispatches across all sessions; never reset, so the bound holds for the process lifetime
        self._wake_attempts: dict[str, int] = {}
        self._bot_mentions: dict[str, int] = {}
        self._bot_window_start = clock()
        self._retry_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def running_keys(self) -> frozenset[str]:
        return frozenset(self._running)

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def wake_attempts(self, event_id: str) -> int:
        return self._wake_attempts.get(event_id, 0)

    # -- admission --------------------------------------------------------

    def submit(self, triggers: Iterable[Trigger]) -> None:
        """Queue triggers (after the bot-loop guard) and run scheduling passes.

        Each trigger gets its own pass, so fan-out siblings sharing an event_id
        leave the queue before the next one is pushed.
        """
        for trigger in triggers:
            if trigger.author_is_bot and trigger.trigger_type == TriggerType.mention:
                if not self._admit_bot_mention(trigger.post_id):
                    logger.info(
                        "bot_mention_dropped",
                        post_id=trigger.post_id,
                        limit=self._settings.max_bot_mentions_per_post,
                    )
                    continue
            if self._queue.push(trigger):
                logger.info(
                    "trigger_queued",
                    trigger_type=trigger.trigger_type.value,
                    post_id=trigger.post_id,
                    backend=trigger.backend_type.value,
                    session_name=trigger.session_name,
                    queue_size=len(self._queue),
                )
                self.schedule()
        self.schedule()

    def _admit_bot_mention(self, post_id: str) -> bool:
        now = self._clock()
        if now - self._bot_window_start >= self._settings.bot_mention_window_s:
            self._bot_mentions.clear()
            self._bot_window_start = now
        count = self._bot_mentions.get(post_id, 0)
        if count >= self._settings.max_bot_mentions_per_post:
            return False
        self._bot_mentions[post_id] = count + 1
        return True

    def schedule(self) -> None:
        """One scheduling pass. Never blocks: admitted triggers run as tasks."""
        if self._closed:
            return
        queued = self._queue.drain()
        if not queued:
            return

        requeued = False
        for trigger in queued:
            attempts = self._wake_attempts.get(trigger.event_id, 0)
            if attempts >= self._settings.max_wake_attempts:
                logger.info(
                    "trigger_attempts_exhausted",
                    event_id=trigger.event_id,
                    session_key=trigger.session_key,
                    attempts=attempts,
                )
                continue

            key = trigger.session_key
            if key in self._running or len(self._running) >= self._settings.max_concurrent:
                self._queue.push(trigger)
                requeued = True
                continue

            self._running.add(key)
            self._wake_attempts[trigger.event_id] = attempts + 1
            task = asyncio.create_task(self._process(trigger), name=f"dispatch:{key}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if requeued:
            self._arm_retry()

    def _arm_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self._settings.retry_delay_s, self._on_retry)

    def _on_retry(self) -> None:
        self._retry_handle = None
        self.schedule()

    async def wait_idle(self) -> None:
        """Wait until no dispatched trigger is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Stop scheduling. Running children are left to finish or time out."""
        self._closed = True
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    # -- execution --------------------------------------------------------

    async def _process(self, trigger: Trigger) -> None:
        key = trigger.session_key
        log = logger.bind(
            post_id=trigger.post_id,
            event_id=trigger.event_id,
            backend=trigger.backend_type.value,
            session_name=trigger.session_name,
        )
        entry = self._roster.find(trigger.backend_type)
        if entry is None:
            log.warning("backend_not_configured")
            self._running.discard(key)
            self.schedule()
            return

        try:
            await self._run(trigger, entry, log)
        except Exception:
            log.exception("trigger_processing_failed")
        finally:
            self._running.discard(key)
            await self._reconcile()
            self.schedule()

    async def _run(self, trigger: Trigger, entry: BackendAgent, log: FilteringBoundLogger) -> None:
        if trigger.trigger_type == TriggerType.mention and self._follows.add(trigger.post_id):
            log.info("post_followed")

        agent_id = await self.ensure_session_agent(entry, trigger.session_name)
        recent_context = await self._fetch_context(trigger)
        log.info(
            "agent_waking",
            trigger_type=trigger.trigger_type.value,
            agent_id=agent_id,
            attempt=self.wake_attempts(trigger.event_id),
        )

        await self._client.set_agent_status(
            "thinking", feed_id=trigger.feed_id, post_id=trigger.post_id, agent_id=agent_id,
        )
        try:
            await self._invoke_with_retries(trigger, entry, agent_id, recent_context, log)
        finally:
            await self._client.set_agent_status(
                "idle", feed_id=trigger.feed_id, post_id=trigger.post_id, agent_id=agent_id,
            )

    async def _invoke_with_retries(
        self,
        trigger: Trigger,
        entry: BackendAgent,
        agent_id: str,
        recent_context: str,
        log: FilteringBoundLogger,
    ) -> bool:
        config = entry.config
        permission_mode = (
            PermissionMode(config.permission_mode)
            if config and config.permission_mode
            else self._permission_mode
        )
        allowed_tools = config.allowed_tools if config and config.allowed_tools else self._allowed_tools
        max_retries = self._settings.max_crash_retries

        for attempt in range(1, max_retries + 1):
            session_id = entry.session_store.get(trigger.session_name)
            request = InvokeRequest(
                trigger=trigger,
                agent_name=entry.agent.name,
                recent_context=recent_context,
                permission_mode=permission_mode,
                allowed_tools=list(allowed_tools),
                session_id=session_id,
                agent_id=agent_id,
                model=config.model if config else None,
                chrome=bool(config and config.chrome),
            )
            try:
                result = await self._invoker.invoke(entry.backend, request)
            except BackendNotFoundError as exc:
                log.error("backend_not_installed", error=str(exc))
                return False
            except (InvocationError, OSError) as exc:
                log.warning(
                    "agent_invocation_failed", error=str(exc), attempt=attempt, max_retries=max_retries,
                )
                continue

            if result.session_id:
                await self._record_session(trigger, entry, agent_id, result.session_id, log)

            if result.ok:
                log.info("agent_completed", attempt=attempt)
                return True
            if result.timed_out:
                log.warning("agent_timeout_no_retry")
                return False
            if session_id is not None:
                entry.session_store.delete(trigger.session_name)
                log.info("agent_session_stale_cleared", session_id=session_id)
            log.warning(
                "agent_exited_nonzero",
                exit_code=result.exit_code,
                attempt=attempt,
                max_retries=max_retries,
            )

        log.error("agent_retries_exhausted", max_retries=max_retries)
        return False

    async def _record_session(
        self,
        trigger: Trigger,
        entry: BackendAgent,
        agent_id: str,
        session_id: str,
        log: FilteringBoundLogger,
    ) -> None:
        entry.session_store.set(trigger.session_name, session_id)
        self._post_sessions.add(
            trigger.post_id,
            SessionRef(backend_type=entry.backend_type, session_name=trigger.session_name),
        )
        try:
            await self._client.report_session(trigger.session_name, session_id, agent_id=agent_id)
        except FeedAPIError as exc:
            log.warning("session_report_failed", error=str(exc))

    async def _fetch_context(self, trigger: Trigger) -> str:
        """Most recent comments on the post; empty if the feed is unreachable."""
        recent: deque[CommentItem] = deque(maxlen=self._settings.context_limit)
        try:
            async for comment in self._client.iter_post_comments(trigger.post_id):
                recent.append(comment)
        except FeedAPIError as exc:
            logger.warning("context_fetch_failed", post_id=trigger.post_id, error=str(exc))
            return ""
        return format_context(recent)

    async def ensure_session_agent(self, entry: BackendAgent, session_name: str) -> str:
        """Feed identity for a session. Non-default sessions get their own, created once.

        Falls back to the backend identity if registration fails.
        """
        if session_name == DEFAULT_SESSION_NAME:
            return entry.agent.id
        name = f"{entry.agent.name}/{session_name}"
        cached = self._registry.get(name)
        if cached:
            return cached
        try:
            info = await self._client.register_agent(name, entry.backend_type.value)
        except FeedAPIError as exc:
            logger.warning("session_agent_register_failed", name=name, error=str(exc))
            return entry.agent.id
        self._registry.set(name, info.id)
        logger.info("session_agent_registered", name=name, agent_id=info.id)
        return info.id

    async def _reconcile(self) -> None:
        """Re-scan after a run; anything new lands in the queue."""
        if self._scanner is None or self._closed:
            return
        try:
            found = await self._scanner.scan_unprocessed()
        except Exception:
            logger.exception("post_completion_scan_failed")
            return
        added = sum(1 for trigger in found if self._queue.push(trigger))
        if added:
            logger.info("post_completion_scan_queued", count=added)
