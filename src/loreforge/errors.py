"""Exception hierarchy and failure classification for loreforge."""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx


RATE_LIMIT_MARKER = "429"


class LoreForgeError(Exception):
    """Base class for all loreforge failures."""


class QueueRejection(LoreForgeError):
    """Terminal, non-retryable failure of a queued task.

    The original exception is kept on ``cause`` so callers can classify it.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class RateLimitedError(LoreForgeError):
    """Upstream signalled rate limiting; the message always carries ``429``."""

    def __init__(self, detail: str = "") -> None:
        message = f"{RATE_LIMIT_MARKER}: Rate limited"
        if detail:
            message = f"{message} - {detail}"
        super().__init__(message)
        self.detail = detail


class UpstreamError(LoreForgeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeout(LoreForgeError):
    """An outbound request exceeded its own deadline."""


class JobTimeoutError(LoreForgeError):
    """A job stayed active past the stale threshold."""


class AssetFailure(LoreForgeError):
    """Optional asset generation failed; never fatal for the job."""


class InvalidTransitionError(LoreForgeError, ValueError):
    """A status update would move a job backwards in its lifecycle."""


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMED_OUT = "timed_out"
    MALFORMED_RESPONSE = "malformed_response"
    UPSTREAM = "upstream"
    CANCELLED = "cancelled"


def is_rate_limited(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` encodes the upstream rate-limit marker."""

    if isinstance(exc, RateLimitedError):
        return True
    return RATE_LIMIT_MARKER in str(exc)


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception raised while driving a job onto an :class:`ErrorKind`."""

    if isinstance(exc, QueueRejection) and exc.cause is not None:
        return classify(exc.cause)
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if is_rate_limited(exc):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, (UpstreamTimeout, JobTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMED_OUT
    if "timeout" in str(exc).lower():
        return ErrorKind.TIMED_OUT
    return ErrorKind.UPSTREAM


__all__ = [
    "RATE_LIMIT_MARKER",
    "LoreForgeError",
    "QueueRejection",
    "RateLimitedError",
    "UpstreamError",
    "UpstreamTimeout",
    "JobTimeoutError",
    "AssetFailure",
    "InvalidTransitionError",
    "ErrorKind",
    "is_rate_limited",
    "classify",
]
