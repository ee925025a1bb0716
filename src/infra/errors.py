"""Custom exception hierarchy for the AgentFeed worker.

All worker-specific exceptions inherit from WorkerError,
which carries an error code for structured log events.
"""

from __future__ import annotations


class WorkerError(Exception):
    """Base exception for all worker errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ConfigError(WorkerError):
    """Invalid or missing worker configuration."""

    def __init__(self, message: str, *, code: str = "CONFIG_ERROR") -> None:
        super().__init__(message, code=code)


class FeedAPIError(WorkerError):
    """Errors talking to the feed HTTP API (transport failures, non-2xx responses)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str = "FEED_API_ERROR",
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class StreamError(WorkerError):
    """Errors in the feed event stream connection."""

    def __init__(self, message: str, *, code: str = "STREAM_ERROR") -> None:
        super().__init__(message, code=code)


class BackendError(WorkerError):
    """Errors in a backend adapter (config registration, unknown type)."""

    def __init__(self, message: str, *, code: str = "BACKEND_ERROR") -> None:
        super().__init__(message, code=code)


class BackendNotFoundError(BackendError):
    """The backend CLI binary is not installed or not on PATH."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="BACKEND_NOT_FOUND")


class InvocationError(WorkerError):
    """A backend CLI process could not be started or driven."""

    def __init__(self, message: str, *, code: str = "INVOCATION_ERROR") -> None:
        super().__init__(message, code=code)


class StoreError(WorkerError):
    """A durable store could not be written."""

    def __init__(self, message: str, *, code: str = "STORE_ERROR") -> None:
        super().__init__(message, code=code)
