"""
Crawler control facade.

Wires the queue, ingestion pipeline, stats recorder and orchestrator around
one database and one remote fetch port, and exposes the operations an
operator needs (seed, start/stop, stats, backfill, maintenance).

Example:
    >>> db = DatabaseManager("crawl.db")
    >>> service = CrawlerService(db, ReplaySource("./replay"))
    >>> service.seed(["76561197960265729"])
    >>> service.run_once()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from viralcrawl.core.config import CrawlerConfig
from viralcrawl.infra.database import DatabaseManager
from viralcrawl.infra.task_queue import TaskQueue
from viralcrawl.integrations.remote import RemoteFetchPort
from viralcrawl.pipeline.ingest import IngestionPipeline
from viralcrawl.pipeline.orchestrator import CrawlOrchestrator, CycleReport
from viralcrawl.pipeline.stats import CrawlStatsView, StatsRecorder
from viralcrawl.steamid import normalize_player_id

logger = logging.getLogger(__name__)


class CrawlerService:
    """Operator-facing entry point for one crawler instance."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        port: RemoteFetchPort | None = None,
        config: CrawlerConfig | None = None,
    ):
        self.db = db_manager
        self.port = port
        self.config = config or CrawlerConfig()
        self.config.validate()

        self.queue = TaskQueue(db_manager, max_retries=self.config.max_retries)
        self.pipeline = IngestionPipeline(db_manager)
        self.stats = StatsRecorder(db_manager, self.queue)
        self._orchestrator: CrawlOrchestrator | None = None

    @property
    def orchestrator(self) -> CrawlOrchestrator:
        """Orchestrator bound to the remote port (built on first use)."""
        if self._orchestrator is None:
            if self.port is None:
                raise RuntimeError("No remote fetch port configured; cannot crawl")
            self._orchestrator = CrawlOrchestrator(
                self.queue, self.pipeline, self.port, self.stats, self.config
            )
        return self._orchestrator

    def seed(self, player_ids: Iterable[str | int]) -> list[str]:
        """
        Queue players at seed priority.

        Ids must be numeric: SteamID64s or short account ids. Vanity names,
        profile URLs and other strings are rejected, not queued. Existing
        tasks are re-prioritized and moved back to PENDING.

        Returns:
            The normalized SteamID64s that were seeded

        Raises:
            ValueError: If any id is invalid (nothing is seeded)
        """
        normalized = list(dict.fromkeys(normalize_player_id(pid) for pid in player_ids))
        if not normalized:
            return []

        self.pipeline.ensure_players(normalized)
        self.queue.enqueue_many(normalized, self.config.seed_priority)
        logger.info(f"Seeded {len(normalized)} player(s)")
        return normalized

    def start(self) -> None:
        self.orchestrator.start()

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop the background loop, optionally waiting for it to exit."""
        if self._orchestrator is None:
            return
        self.orchestrator.stop()
        if wait:
            self.orchestrator.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._orchestrator is not None and self._orchestrator.is_running

    def get_crawl_stats(self) -> CrawlStatsView:
        view = self.stats.collect()
        view.is_running = self.is_running
        return view

    def backfill(self, priority: int | None = None, limit: int | None = None) -> int:
        """Queue discovered players that were never crawled."""
        if priority is None:
            priority = self.config.backfill_priority
        return self.queue.backfill(priority, limit)

    def reset_stalled(self, include_rate_limited: bool = True) -> int:
        return self.queue.reset_stalled(include_rate_limited)

    def run_once(self) -> CycleReport:
        """Run a single cycle in the calling thread."""
        return self.orchestrator.run_cycle()
