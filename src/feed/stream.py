"""Reconnecting client for the feed's server-sent event broadcast.

One logical connection at a time. On disconnect it reconnects with exponential
backoff (1s doubling to 60s); the backoff only resets when the previous connection
stayed up long enough to count as recovered, so a flapping link keeps backing off.
Replayed events (same server-assigned id after a reconnect) are delivered once.
All delivery goes through one callback, invoked sequentially from the reader task.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
import structlog

from src.config.settings import StreamSettings
from src.feed.models import HEARTBEAT
from src.infra.errors import StreamError

logger = structlog.get_logger()

# Server heartbeats every ~15s; a silent read this long means the link is dead.
_READ_TIMEOUT_S = 60.0
_CONNECT_TIMEOUT_S = 10.0


@dataclass
class StreamEvent:
    """One dispatched SSE frame."""

    type: str
    data: str
    id: str | None = None


class SSEParser:
    """Incremental text/event-stream parser fed one line (without newline) at a time."""

    def __init__(self) -> None:
        self._event_type = ""
        self._data: list[str] = []
        self._event_id: str | None = None

    def feed_line(self, line: str) -> StreamEvent | None:
        """Consume a line. Returns an event when a blank line completes one."""
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event_type = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._event_id = value or None
        return None

    def _dispatch(self) -> StreamEvent | None:
        if not self._event_type and not self._data:
            self._event_id = None
            return None
        event = StreamEvent(
            type=self._event_type or "message",
            data="\n".join(self._data),
            id=self._event_id,
        )
        self._event_type = ""
        self._data = []
        self._event_id = None
        return event


class ReconnectBackoff:
    """Reconnect delay schedule: initial, doubling to a cap, reset after stable uptime."""

    def __init__(self, initial_s: float, max_s: float, reset_after_s: float) -> None:
        self._initial = initial_s
        self._max = max_s
        self._reset_after = reset_after_s
        self._current = initial_s

    @property
    def current(self) -> float:
        return self._current

    def next_delay(self, uptime_s: float | None) -> float:
        """Delay before the next attempt, given how long the dropped connection lasted.

        uptime_s is None when the connection never opened.
        """
        if uptime_s is not None and uptime_s >= self._reset_after:
            self._current = self._initial
        delay = self._current
        self._current = min(self._current * 2, self._max)
        return delay


class ReplayFilter:
    """Rolling set of delivered event ids, cleared every window_s seconds."""

    def __init__(self, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._window = window_s
        self._clock = clock
        self._seen: set[str] = set()
        self._cleared_at = clock()

    def is_replay(self, event_id: str | None) -> bool:
        now = self._clock()
        if now - self._cleared_at >= self._window:
            self._seen.clear()
            self._cleared_at = now
        if not event_id:
            return False
        if event_id in self._seen:
            return True
        self._seen.add(event_id)
        return False


class EventStreamClient:
    """Maintain one subscription to the event stream until close() is called."""

    def __init__(
        self,
        url: str,
        api_key: str,
        on_event: Callable[[StreamEvent], None],
        *,
        settings: StreamSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = settings or StreamSettings()
        self._url = url
        self._on_event = on_event
        self._clock = clock
        self._sleep = sleep
        self._backoff = ReconnectBackoff(
            settings.backoff_initial_s,
            settings.backoff_max_s,
            settings.backoff_reset_after_s,
        )
        self._replays = ReplayFilter(settings.dedup_window_s, clock=clock)
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {api_key}", "Accept": "text/event-stream"},
            timeout=httpx.Timeout(_CONNECT_TIMEOUT_S, read=_READ_TIMEOUT_S),
            transport=transport,
        )
        self._closed = False
        self._connected_once = False
        self._opened_at: float | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def backoff(self) -> ReconnectBackoff:
        return self._backoff

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="event_stream")
        return self._task

    async def close(self) -> None:
        """Stop reconnecting, drop the live connection and release the HTTP client."""
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._client.aclose()
        logger.info("stream_closed")

    async def run(self) -> None:
        """Connect, read, and reconnect with backoff until closed."""
        while not self._closed:
            self._opened_at = None
            try:
                await self._read_once()
                logger.info("stream_ended_by_server")
            except StreamError as exc:
                logger.warning("stream_disconnected", error=str(exc), code=exc.code)
            except httpx.HTTPError as exc:
                logger.warning("stream_disconnected", error=str(exc) or type(exc).__name__)
            except Exception:
                logger.exception("stream_disconnected")
            if self._closed:
                break
            opened_at = self._opened_at
            uptime = self._clock() - opened_at if opened_at is not None else None
            delay = self._backoff.next_delay(uptime)
            logger.info(
                "stream_reconnecting",
                delay_s=delay,
                uptime_s=round(uptime, 1) if uptime is not None else None,
            )
            await self._sleep(delay)

    async def _read_once(self) -> None:
        """Run one connection to completion. Returns when the server ends the stream."""
        parser = SSEParser()
        async with self._client.stream("GET", self._url) as response:
            if response.status_code != 200:
                raise StreamError(
                    f"Event stream returned HTTP {response.status_code}",
                    code=f"HTTP_{response.status_code}",
                )
            self._opened_at = self._clock()
            logger.info("stream_reconnected" if self._connected_once else "stream_connected")
            self._connected_once = True
            async for line in response.aiter_lines():
                event = parser.feed_line(line)
                if event is not None:
                    self._deliver(event)

    def _deliver(self, event: StreamEvent) -> None:
        if event.type == HEARTBEAT:
            return
        if self._replays.is_replay(event.id):
            logger.debug("stream_replay_dropped", event_id=event.id, type=event.type)
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("stream_event_handler_failed", type=event.type, event_id=event.id)
