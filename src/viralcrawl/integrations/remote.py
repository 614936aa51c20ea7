"""
Remote Fetch Port

The crawler talks to the rate-limited, session-gated game coordinator only
through this interface. Concrete clients (the logged-in protocol client, the
recorded-payload replay source, test fakes) implement it.

Failures are reported as RemoteFetchError subclasses tagged with an ErrorKind,
so the orchestrator can classify them without parsing prose.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Protocol, runtime_checkable

# Default time bound for a single remote call, in seconds
DEFAULT_FETCH_TIMEOUT = 30.0


class ErrorKind(Enum):
    """Structured failure tag carried by remote fetch errors."""

    SESSION_NOT_READY = "session_not_ready"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    OTHER = "other"


class RemoteFetchError(Exception):
    """Base class for failures reported by a remote fetch port."""

    kind = ErrorKind.OTHER


class SessionNotReadyError(RemoteFetchError):
    """The remote session is not established; the call was not attempted."""

    kind = ErrorKind.SESSION_NOT_READY


class RemoteTimeoutError(RemoteFetchError):
    """The remote source did not answer within the time bound."""

    kind = ErrorKind.TIMEOUT


class RemoteRateLimitedError(RemoteFetchError):
    """The remote source refused the call because of rate limiting."""

    kind = ErrorKind.RATE_LIMITED


@runtime_checkable
class RemoteFetchPort(Protocol):
    """Capabilities the crawler consumes from the remote data provider."""

    def is_session_ready(self) -> bool:
        """Whether calls can currently be made."""
        ...

    def fetch_match_history(self, player_id: str, timeout: float) -> list[dict[str, Any]]:
        """
        Fetch the recent matches of a player.

        An empty list means either no matches or no answer within the bound;
        the provider does not distinguish the two.
        """
        ...

    def fetch_profile(self, player_id: str, timeout: float) -> dict[str, Any] | None:
        """Fetch the profile of a player, or None when the provider has none."""
        ...


def classify_error(error: BaseException) -> ErrorKind:
    """
    Map an exception raised by a fetch port onto an ErrorKind.

    Structured errors carry their own kind. Anything else is judged from its
    type and message text, which is how untagged client errors surface
    (e.g. "Request timeout", "RATE_LIMIT_EXCEEDED", "Rate-limited by GC").
    """
    if isinstance(error, RemoteFetchError):
        return error.kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT

    message = str(error).lower()
    if "ratelimit" in re.sub(r"[\s_-]", "", message):
        return ErrorKind.RATE_LIMITED
    if "timeout" in message or "timed out" in message:
        return ErrorKind.TIMEOUT
    if "not connected" in message or "no session" in message:
        return ErrorKind.SESSION_NOT_READY
    return ErrorKind.OTHER
