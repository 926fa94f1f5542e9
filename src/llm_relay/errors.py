"""Error taxonomy and best-effort classification.

Every failure surfaced by the relay is mapped onto one :class:`ErrorKind`.
Classification looks at the exception type first and falls back to
substring matching on the message, since providers report the same
condition in many different shapes.
"""

from __future__ import annotations

import asyncio
import enum

import httpx


class ErrorKind(str, enum.Enum):
    """Closed set of failure categories reported on error chunks."""

    CANCELLED = "cancelled"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    NETWORK_UNAVAILABLE = "network_unavailable"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RelayError(Exception):
    """Base class for errors raised by llm-relay."""


class RequestCancelled(RelayError):
    """The request was cancelled by the caller or by its timeout."""

    def __init__(self, reason: str = "request cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class RequestTimeout(RelayError):
    """The request ran past its time budget."""

    def __init__(self, reason: str = "request timed out") -> None:
        super().__init__(reason)
        self.reason = reason


class ProviderHTTPError(RelayError):
    """A provider endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "", url: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        detail = body.strip()
        if len(detail) > 500:
            detail = detail[:500] + "..."
        super().__init__(f"HTTP {status_code} from {url or 'provider'}: {detail}")


class ProviderStreamError(RelayError):
    """A provider reported an error inside an otherwise readable stream."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


class InvalidChunk(RelayError):
    """A value claimed to be a chunk but its fields do not match its kind."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_CANCEL_PATTERNS = ("aborted", "cancelled", "canceled", "cancel")
_RATE_LIMIT_PATTERNS = ("rate limit", "rate_limit", "429", "too many requests")
_AUTH_PATTERNS = (
    "401", "403", "unauthorized", "invalid api key", "invalid x-api-key",
    "authentication", "permission denied",
)
_NETWORK_PATTERNS = (
    "network", "econnrefused", "econnreset", "enotfound", "connection",
    "name or service not known", "unreachable",
)
_TIMEOUT_PATTERNS = ("timeout", "timed out", "etimedout")

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def _kind_from_status(status: int) -> ErrorKind | None:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.AUTH_FAILED
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    return None


def classify_error(error: BaseException) -> ErrorKind:
    """Map *error* onto an :class:`ErrorKind`."""
    if isinstance(error, (RequestCancelled, asyncio.CancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(error, (RequestTimeout, httpx.TimeoutException, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, ProviderStreamError) and error.kind is not ErrorKind.UNKNOWN:
        return error.kind
    if isinstance(error, ProviderHTTPError):
        kind = _kind_from_status(error.status_code)
        if kind is not None:
            return kind
    if isinstance(error, httpx.HTTPStatusError):
        kind = _kind_from_status(error.response.status_code)
        if kind is not None:
            return kind
    if isinstance(error, (httpx.ConnectError, httpx.NetworkError, ConnectionError)):
        return ErrorKind.NETWORK_UNAVAILABLE

    message = str(error).lower()
    if any(p in message for p in _CANCEL_PATTERNS):
        return ErrorKind.CANCELLED
    if any(p in message for p in _RATE_LIMIT_PATTERNS):
        return ErrorKind.RATE_LIMITED
    if any(p in message for p in _AUTH_PATTERNS):
        return ErrorKind.AUTH_FAILED
    if any(p in message for p in _TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if any(p in message for p in _NETWORK_PATTERNS):
        return ErrorKind.NETWORK_UNAVAILABLE
    return ErrorKind.UNKNOWN


def is_retryable(error: BaseException) -> bool:
    """Whether a failed dispatch may be attempted again.

    Cancellation and authentication failures are never retried.
    """
    kind = classify_error(error)
    if kind in (ErrorKind.CANCELLED, ErrorKind.AUTH_FAILED):
        return False
    if kind in (ErrorKind.RATE_LIMITED, ErrorKind.NETWORK_UNAVAILABLE, ErrorKind.TIMEOUT):
        return True
    if isinstance(error, ProviderHTTPError):
        return error.status_code in _RETRYABLE_STATUS
    message = str(error).lower()
    return any(code in message for code in ("500", "502", "503", "504"))


def describe_error(kind: ErrorKind, error: BaseException) -> str:
    """Human-readable message for an error chunk."""
    prefix = {
        ErrorKind.RATE_LIMITED: "Rate limit exceeded, retry later",
        ErrorKind.AUTH_FAILED: "Authentication failed, check the API key",
        ErrorKind.NETWORK_UNAVAILABLE: "Network unavailable",
        ErrorKind.TIMEOUT: "Request timed out",
        ErrorKind.CANCELLED: "Request cancelled",
    }.get(kind)
    text = str(error) or type(error).__name__
    if prefix is None:
        return text
    return f"{prefix}: {text}"
