"""
Ingestion Pipeline - normalize fetched payloads into the relational store.

Match ingestion is idempotent per match id: the match row, its rounds, the
per-round and per-match player lines, and the player total increments commit
together or not at all. A duplicate insert (another worker stored the same
match first) is treated as "already ingested".

Profile ingestion never loses freshness because of an account id collision:
the conflicting id is dropped and the rest of the profile is written.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from viralcrawl.infra.database import (
    DatabaseManager,
    Match,
    MatchPlayer,
    Player,
    Round,
    RoundPlayer,
    insert_ignore,
    new_player_row,
)
from viralcrawl.pipeline.payloads import SLOT_METRICS, RawMatch, RawProfile

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class IngestOutcome(Enum):
    """Result of a match ingestion attempt."""

    STORED = "stored"
    ALREADY_INGESTED = "already_ingested"
    INVALID = "invalid"


class DataIntegrityConflict(Exception):
    """A provider value clashes with a unique key owned by another row."""


@dataclass
class PlayerMatchLine:
    """Running per-match sum for one participant."""

    slot: int
    rounds_played: int = 0
    totals: dict[str, int] = field(default_factory=lambda: dict.fromkeys(SLOT_METRICS, 0))

    def add(self, line: dict[str, int]) -> None:
        self.rounds_played += 1
        for column, value in line.items():
            self.totals[column] += value


class IngestionPipeline:
    """Writes profiles and matches fetched for a crawled player."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    # =========================================================================
    # Players
    # =========================================================================

    def ensure_players(self, player_ids: Iterable[str]) -> int:
        """
        Create missing player rows and refresh last_seen on all of them.

        Returns:
            Number of players created
        """
        player_ids = list(dict.fromkeys(player_ids))
        if not player_ids:
            return 0

        session = self.db.get_session()
        try:
            created = insert_ignore(
                session, Player, [new_player_row(pid) for pid in player_ids], ["id"]
            )
            self._touch_players(session, player_ids)
            session.commit()
            return created
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to ensure players: {e}")
            raise
        finally:
            session.close()

    def ingest_profile(self, player_id: str, raw_profile: dict[str, Any] | RawProfile) -> None:
        """
        Upsert a player's profile fields.

        If the profile's account id already belongs to another player, the
        write goes ahead without it and the existing owner is left alone.
        """
        profile = (
            raw_profile
            if isinstance(raw_profile, RawProfile)
            else RawProfile.from_dict(raw_profile)
        )

        session = self.db.get_session()
        try:
            try:
                self._check_account_owner(session, player_id, profile.account_id)
                self._upsert_profile(session, player_id, profile, profile.account_id)
                session.commit()
            except (DataIntegrityConflict, IntegrityError) as e:
                session.rollback()
                logger.warning(
                    f"Account id {profile.account_id} conflicts for {player_id}, "
                    f"storing profile without it: {e}"
                )
                self._upsert_profile(session, player_id, profile, None)
                session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to store profile for {player_id}: {e}")
            raise
        finally:
            session.close()

    @staticmethod
    def _check_account_owner(session: Session, player_id: str, account_id: int | None) -> None:
        if account_id is None:
            return
        owner = session.query(Player.id).filter(Player.account_id == account_id).scalar()
        if owner is not None and owner != player_id:
            raise DataIntegrityConflict(f"account id {account_id} is owned by {owner}")

    @staticmethod
    def _upsert_profile(
        session: Session, player_id: str, profile: RawProfile, account_id: int | None
    ) -> None:
        insert_ignore(session, Player, [new_player_row(player_id)], ["id"])

        values = profile.profile_fields()
        values["last_seen"] = _utc_now()
        if account_id is not None:
            values["account_id"] = account_id
        session.execute(
            update(Player)
            .where(Player.id == player_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _touch_players(session: Session, player_ids: list[str]) -> None:
        session.execute(
            update(Player)
            .where(Player.id.in_(player_ids))
            .values(last_seen=_utc_now())
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # Matches
    # =========================================================================

    def ingest_match(self, raw_match: dict[str, Any], discovered_by: str) -> IngestOutcome:
        """
        Store a match once, with rounds, player lines and player totals.

        Args:
            raw_match: Raw match record from the provider
            discovered_by: SteamID64 of the player whose history returned it

        Returns:
            IngestOutcome describing what happened
        """
        try:
            match = RawMatch.from_dict(raw_match)
        except ValueError as e:
            logger.warning(f"Skipping match from {discovered_by}: {e}")
            return IngestOutcome.INVALID

        session = self.db.get_session()
        try:
            if session.get(Match, match.match_id) is not None:
                logger.debug(f"Match {match.match_id} already exists, skipping")
                return IngestOutcome.ALREADY_INGESTED

            participants = match.participant_ids()
            try:
                self._write_match(session, match, participants, discovered_by)
                session.commit()
            except IntegrityError:
                session.rollback()
                if session.get(Match, match.match_id) is not None:
                    logger.debug(f"Match {match.match_id} stored concurrently, discarding")
                    return IngestOutcome.ALREADY_INGESTED
                raise

            logger.info(f"Stored match {match.match_id} with {len(participants)} players")
            return IngestOutcome.STORED
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to store match {match.match_id}: {e}")
            raise
        finally:
            session.close()

    def _write_match(
        self, session: Session, match: RawMatch, participants: list[str], discovered_by: str
    ) -> None:
        """All writes for one match; the caller commits or rolls back."""
        if participants:
            insert_ignore(
                session,
                Player,
                [
                    new_player_row(pid, None if pid == discovered_by else discovered_by)
                    for pid in participants
                ],
                ["id"],
            )
            self._touch_players(session, participants)

        match_row = Match(
            id=match.match_id,
            match_time=match.match_time,
            map_name=match.map_name,
            duration=match.duration,
            max_rounds=match.max_rounds,
            round_count=len(match.rounds),
            server_ip=match.server_ip,
            tv_port=match.tv_port,
            game_type=match.game_type,
            demo_url=match.demo_url,
            round_stats_raw=json.dumps(match.raw_rounds),
            processed=False,
        )
        session.add(match_row)
        # Surfaces a duplicate match id before any child rows are built
        session.flush()

        lines: dict[str, PlayerMatchLine] = {}
        for raw_round in match.rounds:
            round_row = Round(
                match_id=match.match_id,
                round_index=raw_round.index,
                round_number=raw_round.round_number,
                map=raw_round.map,
                round_result=raw_round.round_result,
                match_result=raw_round.match_result,
                duration=raw_round.duration,
                team_score_a=raw_round.team_scores[0],
                team_score_b=raw_round.team_scores[1],
                switched_teams=raw_round.switched_teams,
            )
            for slot, player_id in raw_round.participants():
                line = raw_round.slot_line(slot)
                round_row.players.append(
                    RoundPlayer(match_id=match.match_id, player_id=player_id, slot=slot, **line)
                )
                lines.setdefault(player_id, PlayerMatchLine(slot=slot)).add(line)
            match_row.rounds.append(round_row)

        for player_id, line in lines.items():
            session.add(
                MatchPlayer(
                    match_id=match.match_id,
                    player_id=player_id,
                    slot=line.slot,
                    rounds_played=line.rounds_played,
                    **line.totals,
                )
            )
            session.execute(
                update(Player)
                .where(Player.id == player_id)
                .values(
                    total_matches=Player.total_matches + 1,
                    total_kills=Player.total_kills + line.totals["kills"],
                    total_deaths=Player.total_deaths + line.totals["deaths"],
                    total_assists=Player.total_assists + line.totals["assists"],
                    total_mvps=Player.total_mvps + line.totals["mvps"],
                )
                .execution_options(synchronize_session=False)
            )
