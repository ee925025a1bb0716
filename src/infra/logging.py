"""structlog setup for the worker process.

Logs go to stderr. A resumed CLI session writes its own output to the worker's
stdout, and the two streams must not interleave. Several workers may run side by
side against one feed (one per project directory), so every line carries the
worker's agent name as ``worker``.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(
    *,
    json_output: bool = True,
    log_level: str = "INFO",
    agent_name: str | None = None,
) -> None:
    """Configure structlog once, before the first log call.

    Args:
        json_output: JSON lines for log shippers; False gives console output.
        log_level: Minimum level name. Anything logging does not know is rejected
            here rather than silently filtering everything.
        agent_name: Bound as ``worker`` on every line when given.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level!r}")

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if agent_name:
        structlog.contextvars.bind_contextvars(worker=agent_name)
