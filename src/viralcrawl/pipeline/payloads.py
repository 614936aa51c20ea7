"""
Raw Provider Payloads

Typed views over the match and profile records returned by the game
coordinator. Parsing is lenient: missing or malformed per-slot values become
zero so that per-player aggregates are always well-defined sums.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from viralcrawl.steamid import MAX_ACCOUNT_ID, account_id_to_steam_id64

# Per-slot metric arrays in a round record, keyed by our column names
SLOT_METRICS = {
    "kills": "kills",
    "deaths": "deaths",
    "assists": "assists",
    "score": "scores",
    "mvps": "mvps",
    "headshots": "enemy_headshots",
    "enemy_kills": "enemy_kills",
}


def safe_int(value: Any, default: int = 0) -> int:
    """Safely convert a value to int."""
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def optional_int(value: Any) -> int | None:
    """Convert to int, keeping None for missing values."""
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _slot_value(values: list[Any], slot: int) -> int:
    """Metric for a slot, zero when absent; never negative."""
    if slot >= len(values):
        return 0
    return max(safe_int(values[slot]), 0)


@dataclass
class RawRound:
    """One entry of a match's round stats list."""

    index: int
    round_number: int
    account_ids: list[int] = field(default_factory=list)
    metrics: dict[str, list[Any]] = field(default_factory=dict)
    map: str | None = None
    round_result: int | None = None
    match_result: int | None = None
    duration: int | None = None
    max_rounds: int | None = None
    team_scores: tuple[int | None, int | None] = (None, None)
    switched_teams: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int) -> RawRound:
        reservation = data.get("reservation") or {}
        scores = list(data.get("team_scores") or [])
        scores += [None] * (2 - len(scores))
        explicit_round = optional_int(data.get("round"))
        switched = data.get("b_switched_teams")

        return cls(
            index=index,
            # Source rounds without an explicit number fall back to position
            round_number=explicit_round if explicit_round else index,
            account_ids=[safe_int(a) for a in (reservation.get("account_ids") or [])],
            metrics={
                column: list(data.get(source) or []) for column, source in SLOT_METRICS.items()
            },
            map=data.get("map"),
            round_result=optional_int(data.get("round_result")),
            match_result=optional_int(data.get("match_result")),
            duration=optional_int(data.get("match_duration")),
            max_rounds=optional_int(data.get("max_rounds")),
            team_scores=(optional_int(scores[0]), optional_int(scores[1])),
            switched_teams=bool(switched) if switched is not None else None,
        )

    def participants(self) -> list[tuple[int, str]]:
        """(slot, SteamID64) for every occupied slot; zero ids are skipped."""
        return [
            (slot, account_id_to_steam_id64(account_id))
            for slot, account_id in enumerate(self.account_ids)
            if 0 < account_id <= MAX_ACCOUNT_ID
        ]

    def slot_line(self, slot: int) -> dict[str, int]:
        """Every per-slot metric for one slot, defaulting to zero."""
        return {column: _slot_value(values, slot) for column, values in self.metrics.items()}


@dataclass
class RawMatch:
    """A match record from a player's recent games list."""

    match_id: str
    match_time: datetime | None
    rounds: list[RawRound] = field(default_factory=list)
    server_ip: int | None = None
    tv_port: int | None = None
    game_type: int | None = None
    game_map: str | None = None
    raw_rounds: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawMatch:
        """
        Parse a raw match record.

        Raises:
            ValueError: If the record carries no match id
        """
        match_id = str(data.get("matchid") or "").strip()
        if not match_id or match_id == "0":
            raise ValueError("Match record has no match id")

        timestamp = safe_int(data.get("matchtime"))
        watchable = data.get("watchablematchinfo") or {}
        raw_rounds = [r for r in (data.get("roundstatsall") or []) if isinstance(r, dict)]

        return cls(
            match_id=match_id,
            match_time=datetime.fromtimestamp(timestamp, UTC) if timestamp > 0 else None,
            rounds=[RawRound.from_dict(r, i) for i, r in enumerate(raw_rounds)],
            server_ip=optional_int(watchable.get("server_ip")) or None,
            tv_port=optional_int(watchable.get("tv_port")),
            game_type=optional_int(watchable.get("game_type")),
            game_map=watchable.get("game_map") or None,
            raw_rounds=raw_rounds,
        )

    def participant_ids(self) -> list[str]:
        """Distinct participant SteamID64s in order of first appearance."""
        seen: dict[str, None] = {}
        for round_ in self.rounds:
            for _, steam_id in round_.participants():
                seen.setdefault(steam_id, None)
        return list(seen)

    @property
    def map_name(self) -> str | None:
        if self.game_map:
            return self.game_map
        for round_ in self.rounds:
            if round_.map and not _is_url(round_.map):
                return round_.map
        return None

    @property
    def demo_url(self) -> str | None:
        """Demo download link; the provider reports it in the last round's map field."""
        for round_ in reversed(self.rounds):
            if round_.map and _is_url(round_.map):
                return round_.map
        return None

    @property
    def duration(self) -> int | None:
        return self.rounds[-1].duration if self.rounds else None

    @property
    def max_rounds(self) -> int | None:
        return self.rounds[0].max_rounds if self.rounds else None


@dataclass
class RawProfile:
    """A player profile record."""

    account_id: int | None = None
    player_level: int | None = None
    player_cur_xp: int | None = None
    vac_banned: bool = False
    penalty_seconds: int | None = None
    penalty_reason: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawProfile:
        return cls(
            account_id=optional_int(data.get("account_id")) or None,
            player_level=optional_int(data.get("player_level")),
            player_cur_xp=optional_int(data.get("player_cur_xp")),
            vac_banned=bool(data.get("vac_banned") or False),
            penalty_seconds=optional_int(data.get("penalty_seconds")),
            penalty_reason=optional_int(data.get("penalty_reason")),
        )

    def profile_fields(self) -> dict[str, Any]:
        """Player columns written by profile ingestion, account id excluded."""
        return {
            "player_level": self.player_level,
            "player_cur_xp": self.player_cur_xp,
            "vac_banned": self.vac_banned,
            "penalty_seconds": self.penalty_seconds,
            "penalty_reason": self.penalty_reason,
        }


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))
