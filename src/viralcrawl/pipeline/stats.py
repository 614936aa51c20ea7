"""
Crawl statistics: live counters over the store plus an append-only history.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select

from viralcrawl.infra.database import (
    CrawlStatsSnapshot,
    CrawlStatus,
    DatabaseManager,
    Match,
    MatchPlayer,
    Player,
    Round,
    RoundPlayer,
)
from viralcrawl.infra.task_queue import TaskQueue

logger = logging.getLogger(__name__)


def _ratio(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator, 2)


@dataclass
class CrawlStatsView:
    """Point-in-time crawl health."""

    total_players: int = 0
    total_matches: int = 0
    total_match_players: int = 0
    total_rounds: int = 0
    total_round_players: int = 0
    matches_with_demo: int = 0
    queue: dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in CrawlStatus}
    )
    avg_matches_per_player: float = 0.0
    avg_rounds_per_match: float = 0.0
    demo_coverage: float = 0.0
    recorded_at: datetime | None = None
    is_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["recorded_at"] = self.recorded_at.isoformat() if self.recorded_at else None
        return data

    @classmethod
    def from_snapshot(cls, row: CrawlStatsSnapshot) -> CrawlStatsView:
        return cls(
            total_players=row.total_players,
            total_matches=row.total_matches,
            total_match_players=row.total_match_players,
            total_rounds=row.total_rounds,
            total_round_players=row.total_round_players,
            matches_with_demo=row.matches_with_demo,
            queue={
                CrawlStatus.PENDING.value: row.pending_crawls,
                CrawlStatus.IN_PROGRESS.value: row.in_progress_crawls,
                CrawlStatus.COMPLETED.value: row.completed_crawls,
                CrawlStatus.FAILED.value: row.failed_crawls,
                CrawlStatus.RATE_LIMITED.value: row.rate_limited_crawls,
            },
            avg_matches_per_player=row.avg_matches_per_player,
            avg_rounds_per_match=row.avg_rounds_per_match,
            demo_coverage=row.demo_coverage,
            recorded_at=row.created_at,
        )


class StatsRecorder:
    """Collects crawl counters and records one snapshot per cycle."""

    def __init__(self, db_manager: DatabaseManager, queue: TaskQueue | None = None):
        self.db = db_manager
        self.queue = queue or TaskQueue(db_manager)

    def collect(self) -> CrawlStatsView:
        """Count everything now, without recording it."""
        session = self.db.get_session()
        try:

            def count(column) -> int:
                return session.execute(select(func.count(column))).scalar_one()

            players = count(Player.id)
            matches = count(Match.id)
            match_players = count(MatchPlayer.id)
            rounds = count(Round.id)
            round_players = count(RoundPlayer.id)
            with_demo = session.execute(
                select(func.count(Match.id)).where(Match.demo_url.is_not(None))
            ).scalar_one()
        finally:
            session.close()

        return CrawlStatsView(
            total_players=players,
            total_matches=matches,
            total_match_players=match_players,
            total_rounds=rounds,
            total_round_players=round_players,
            matches_with_demo=with_demo,
            queue=self.queue.status_counts(),
            avg_matches_per_player=_ratio(match_players, players),
            avg_rounds_per_match=_ratio(rounds, matches),
            demo_coverage=_ratio(with_demo, matches),
        )

    def snapshot(self) -> CrawlStatsView:
        """Collect and append a history row."""
        view = self.collect()

        session = self.db.get_session()
        try:
            row = CrawlStatsSnapshot(
                total_players=view.total_players,
                total_matches=view.total_matches,
                total_match_players=view.total_match_players,
                total_rounds=view.total_rounds,
                total_round_players=view.total_round_players,
                matches_with_demo=view.matches_with_demo,
                pending_crawls=view.queue[CrawlStatus.PENDING.value],
                in_progress_crawls=view.queue[CrawlStatus.IN_PROGRESS.value],
                completed_crawls=view.queue[CrawlStatus.COMPLETED.value],
                failed_crawls=view.queue[CrawlStatus.FAILED.value],
                rate_limited_crawls=view.queue[CrawlStatus.RATE_LIMITED.value],
                avg_matches_per_player=view.avg_matches_per_player,
                avg_rounds_per_match=view.avg_rounds_per_match,
                demo_coverage=view.demo_coverage,
            )
            session.add(row)
            session.commit()
            view.recorded_at = row.created_at
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to record crawl stats: {e}")
            raise
        finally:
            session.close()

        self._log_summary(view)
        return view

    @staticmethod
    def _log_summary(view: CrawlStatsView) -> None:
        queue = view.queue
        logger.info(
            "=== Crawler Stats ===\n"
            f"Players: {view.total_players}\n"
            f"Matches: {view.total_matches} "
            f"({view.total_rounds} rounds, {view.matches_with_demo} with demo)\n"
            f"Queue: {queue[CrawlStatus.PENDING.value]} pending, "
            f"{queue[CrawlStatus.IN_PROGRESS.value]} in progress, "
            f"{queue[CrawlStatus.COMPLETED.value]} completed, "
            f"{queue[CrawlStatus.FAILED.value]} failed, "
            f"{queue[CrawlStatus.RATE_LIMITED.value]} rate limited\n"
            f"Avg matches/player: {view.avg_matches_per_player}, "
            f"avg rounds/match: {view.avg_rounds_per_match}, "
            f"demo coverage: {view.demo_coverage}"
        )

    def latest_snapshot(self) -> CrawlStatsView | None:
        """Most recently recorded snapshot, if any."""
        session = self.db.get_session()
        try:
            row = (
                session.query(CrawlStatsSnapshot)
                .order_by(CrawlStatsSnapshot.created_at.desc(), CrawlStatsSnapshot.id.desc())
                .first()
            )
            return CrawlStatsView.from_snapshot(row) if row else None
        finally:
            session.close()

    def history(self, limit: int = 100) -> list[CrawlStatsView]:
        """Recorded snapshots, newest first."""
        session = self.db.get_session()
        try:
            rows = (
                session.query(CrawlStatsSnapshot)
                .order_by(CrawlStatsSnapshot.created_at.desc(), CrawlStatsSnapshot.id.desc())
                .limit(limit)
                .all()
            )
            return [CrawlStatsView.from_snapshot(row) for row in rows]
        finally:
            session.close()
