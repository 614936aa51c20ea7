"""
Replay Source - a RemoteFetchPort over recorded payloads.

Serves match histories and profiles captured earlier from the game
coordinator, so a crawl can be driven offline. Layout:

    <root>/matches/<steam_id64>.json    list of raw match records
    <root>/profiles/<steam_id64>.json   one raw profile record

A missing file means "no matches" / "no profile".
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from viralcrawl.integrations.remote import DEFAULT_FETCH_TIMEOUT, RemoteFetchError

logger = logging.getLogger(__name__)


class ReplaySource:
    """Read-only fetch port backed by a directory of JSON files."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        if not self.root.is_dir():
            raise FileNotFoundError(f"Replay directory does not exist: {self.root}")

    def is_session_ready(self) -> bool:
        return True

    def fetch_match_history(
        self, player_id: str, timeout: float = DEFAULT_FETCH_TIMEOUT
    ) -> list[dict[str, Any]]:
        data = self._load(self.root / "matches" / f"{player_id}.json")
        if data is None:
            return []
        if not isinstance(data, list):
            raise RemoteFetchError(f"Match history for {player_id} is not a list")
        return data

    def fetch_profile(
        self, player_id: str, timeout: float = DEFAULT_FETCH_TIMEOUT
    ) -> dict[str, Any] | None:
        data = self._load(self.root / "profiles" / f"{player_id}.json")
        if data is not None and not isinstance(data, dict):
            raise RemoteFetchError(f"Profile for {player_id} is not an object")
        return data

    def _load(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RemoteFetchError(f"Unreadable payload {path.name}: {e}") from e
