from __future__ import annotations

import traceback
from typing import Optional


class WorkerError(Exception):
    """Base class for every error the worker reports to the queue."""


class JobTimeoutError(WorkerError):
    """The parse did not finish within the configured time limit."""

    def __init__(self, limit_ms: int) -> None:
        super().__init__(f"Time limit {limit_ms} ms exceeded, killing job")
        self.limit_ms = limit_ms


class CollaboratorError(WorkerError):
    """
    The parsing environment/parser raised or rejected.

    The original exception is kept both as `original` and as `__cause__`;
    `diagnostic` holds its formatted traceback for the queue record.
    """

    def __init__(self, original: BaseException) -> None:
        message = str(original) or type(original).__name__
        super().__init__(message)
        self.original = original
        self.__cause__ = original
        self.diagnostic = "".join(
            traceback.format_exception(type(original), original, original.__traceback__)
        )

    @classmethod
    def wrap(cls, exc: BaseException) -> WorkerError:
        if isinstance(exc, WorkerError):
            return exc
        return cls(exc)


class CleanupError(WorkerError):
    """Environment teardown failed. Logged only, never reported."""


class InvalidJobError(WorkerError):
    """The job payload could not be turned into a parse request."""


class QueueError(WorkerError):
    """The queue backend failed (connection, protocol, decoding)."""

    def __init__(self, message: str, *, channel: Optional[str] = None) -> None:
        super().__init__(message)
        self.channel = channel


def error_payload(exc: BaseException) -> dict:
    """Serializable summary stored alongside a failed job."""
    payload = {
        "type": type(exc).__name__,
        "message": str(exc),
    }
    diagnostic = getattr(exc, "diagnostic", None)
    if diagnostic:
        payload["stack"] = diagnostic
    limit_ms = getattr(exc, "limit_ms", None)
    if limit_ms is not None:
        payload["limit_ms"] = limit_ms
    return payload
