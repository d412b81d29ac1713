"""Retry policy - Per-operation attempt state machine with exponential backoff.

Each operation moves through:

    Pending -> Attempting(n) -> Success
                             -> Retry     -> Attempting(n+1)
                             -> Terminal

An attempt is retried only for transient failures (connection refused, DNS
failure, timeouts, other network errors, 5xx). Everything else concludes
the operation immediately. Classification works on status codes and httpx
exceptions and never touches the network.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import httpx


class AttemptState(str, Enum):
    """Where an operation stands after an attempt."""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    RETRY = "retry"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class AttemptResult:
    """Classified result of a single attempt."""

    status: int | None
    message: str
    success: bool = False
    transient: bool = False


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and backoff schedule.

    Backoff before attempt k (k >= 2) is base_delay_ms * 2^(k-2), so the
    first retry waits exactly the base delay. Delays are capped at
    max_delay_ms.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before the given (1-based) attempt."""
        if attempt < 2:
            return 0.0
        delay_ms = self.base_delay_ms * (2 ** (attempt - 2))
        return min(delay_ms, self.max_delay_ms) / 1000.0

    def next_state(self, attempt: int, result: AttemptResult) -> AttemptState:
        """Transition after the given (1-based) attempt concluded with result."""
        if result.success:
            return AttemptState.SUCCESS
        if result.transient and attempt < self.max_attempts:
            return AttemptState.RETRY
        return AttemptState.TERMINAL


def classify_status(status: int, reason: str = "") -> AttemptResult:
    """Classify an HTTP response status.

    2xx is success, 5xx is transient, anything else is terminal.
    """
    if 200 <= status < 300:
        return AttemptResult(status=status, message="OK", success=True)
    message = f"HTTP {status} {reason}".rstrip()
    return AttemptResult(status=status, message=message, transient=500 <= status < 600)


def _connect_error_message(exc: Exception) -> str:
    text = str(exc).lower()
    if "refused" in text:
        return "Connection refused"
    if (
        "name or service not known" in text
        or "nodename nor servname" in text
        or "name resolution" in text
        or "getaddrinfo" in text
        or "no address associated" in text
    ):
        return "DNS resolution failed"
    return f"Connection error: {exc}"


def classify_exception(exc: Exception) -> AttemptResult:
    """Classify an exception raised while sending a request.

    Returns:
        AttemptResult with status None and a human-readable category message.
    """
    if isinstance(exc, httpx.TimeoutException):
        return AttemptResult(status=None, message="Request timeout", transient=True)
    if isinstance(exc, httpx.ConnectError):
        return AttemptResult(status=None, message=_connect_error_message(exc), transient=True)
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return AttemptResult(status=None, message=f"Invalid URL: {exc}")
    if isinstance(exc, (httpx.RemoteProtocolError, httpx.DecodingError)):
        return AttemptResult(status=None, message=f"Malformed response: {exc}")
    if isinstance(exc, httpx.LocalProtocolError):
        return AttemptResult(status=None, message=f"Invalid request: {exc}")
    if isinstance(exc, httpx.TransportError):
        # ReadError, WriteError, CloseError, ProxyError
        return AttemptResult(status=None, message=f"Network error: {exc}", transient=True)
    if isinstance(exc, UnicodeEncodeError):
        return AttemptResult(
            status=None,
            message=(
                "Invalid request: non-ASCII characters in header or URL "
                f"({exc.object[exc.start:exc.end]!r})"
            ),
        )
    return AttemptResult(status=None, message=f"Request error: {exc}")
