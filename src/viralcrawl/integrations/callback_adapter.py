"""
Callback Client Adapter

Game coordinator clients answer requests through callbacks (or events) rather
than return values. This adapter turns such a client into a RemoteFetchPort:
each request gets its own Future, and the caller blocks on it for at most the
given time bound.

The wrapped client must provide:
    have_session: bool attribute (or is_session_ready() method)
    request_recent_games(player_id, callback)
    request_players_profile(player_id, callback)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from viralcrawl.integrations.remote import (
    DEFAULT_FETCH_TIMEOUT,
    RemoteFetchError,
    RemoteTimeoutError,
    SessionNotReadyError,
)

logger = logging.getLogger(__name__)


class CallbackClientAdapter:
    """
    Exposes a callback-style protocol client as a blocking RemoteFetchPort.

    Example:
        >>> port = CallbackClientAdapter(gc_client)
        >>> matches = port.fetch_match_history("76561197960265729", timeout=30)
    """

    def __init__(self, client: Any, *, empty_history_on_timeout: bool = True):
        """
        Args:
            client: Callback-style protocol client
            empty_history_on_timeout: Resolve an unanswered match history
                request to an empty list instead of raising
        """
        self.client = client
        self.empty_history_on_timeout = empty_history_on_timeout

    def is_session_ready(self) -> bool:
        checker = getattr(self.client, "is_session_ready", None)
        if callable(checker):
            return bool(checker())
        return bool(getattr(self.client, "have_session", False))

    def fetch_match_history(
        self, player_id: str, timeout: float = DEFAULT_FETCH_TIMEOUT
    ) -> list[dict[str, Any]]:
        try:
            matches = self._call(self.client.request_recent_games, player_id, timeout)
        except RemoteTimeoutError:
            if not self.empty_history_on_timeout:
                raise
            logger.debug(f"No match history answer for {player_id} within {timeout}s")
            return []
        return list(matches or [])

    def fetch_profile(
        self, player_id: str, timeout: float = DEFAULT_FETCH_TIMEOUT
    ) -> dict[str, Any] | None:
        profile = self._call(self.client.request_players_profile, player_id, timeout)
        return profile or None

    def _call(self, request: Callable[..., Any], player_id: str, timeout: float) -> Any:
        """Issue one request and wait for its callback."""
        if not self.is_session_ready():
            raise SessionNotReadyError("Not connected to the game coordinator")

        future: Future = Future()

        def on_response(payload: Any, *_extra: Any) -> None:
            if future.done():
                return
            try:
                future.set_result(payload)
            except InvalidStateError:
                # Cancelled by a timeout between the check and the set
                logger.debug(f"Late answer for {player_id} dropped")

        try:
            request(player_id, on_response)
        except RemoteFetchError:
            raise
        except Exception as e:
            raise RemoteFetchError(f"Request for {player_id} failed: {e}") from e

        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise RemoteTimeoutError(f"Request timeout after {timeout}s for {player_id}")
