"""
Crawl Orchestrator - drains the task queue against the remote source.

Each cycle claims a batch of tasks, processes them in fixed-size chunks (tasks
within a chunk run concurrently, chunks run one after another with a small
gap), classifies every outcome and writes the new statuses back in bulk.

The concurrency limit is the only admission control protecting the remote
source. Everything that must hold across workers or processes (match stored
once, totals incremented once, a task claimed once) is enforced by the store.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from viralcrawl.core.config import CrawlerConfig
from viralcrawl.infra.database import CrawlStatus
from viralcrawl.infra.task_queue import ClaimedTask, TaskQueue, TaskResult
from viralcrawl.integrations.remote import ErrorKind, RemoteFetchPort, classify_error
from viralcrawl.pipeline.ingest import IngestionPipeline, IngestOutcome
from viralcrawl.pipeline.stats import CrawlStatsView, StatsRecorder

logger = logging.getLogger(__name__)


def classify_failure(
    error: BaseException, task: ClaimedTask, max_retries: int
) -> tuple[CrawlStatus, bool]:
    """
    Decide what a failed task becomes.

    Args:
        error: Exception raised while crawling the task's player
        task: The claimed task (attempts includes the current claim)
        max_retries: Attempt ceiling

    Returns:
        (new status, whether to refund the claim's attempt)
    """
    kind = classify_error(error)

    if kind is ErrorKind.SESSION_NOT_READY:
        # Nothing reached the remote source; requeue as if never claimed
        return CrawlStatus.PENDING, True
    if kind is ErrorKind.TIMEOUT and task.attempts >= 2:
        # Timing out again after an earlier attempt: invalid or private account
        return CrawlStatus.FAILED, False
    if kind in (ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED):
        return CrawlStatus.RATE_LIMITED, False
    if task.attempts >= max_retries:
        return CrawlStatus.FAILED, False
    return CrawlStatus.PENDING, False


@dataclass
class CycleReport:
    """What one orchestrator cycle did."""

    session_ready: bool = True
    claimed: int = 0
    released: int = 0
    results: list[TaskResult] = field(default_factory=list)
    matches_stored: int = 0
    backfilled: int = 0
    duration_seconds: float = 0.0
    stats: CrawlStatsView | None = None

    def count(self, status: CrawlStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def rate_limited(self) -> int:
        return self.count(CrawlStatus.RATE_LIMITED)

    def summary(self) -> str:
        return (
            f"completed={self.count(CrawlStatus.COMPLETED)} "
            f"failed={self.count(CrawlStatus.FAILED)} "
            f"rate_limited={self.rate_limited} "
            f"requeued={self.count(CrawlStatus.PENDING)} "
            f"released={self.released}"
        )


class CrawlOrchestrator:
    """
    Runs crawl cycles, either one at a time (run_cycle) or in a background
    loop (start/stop).
    """

    def __init__(
        self,
        queue: TaskQueue,
        pipeline: IngestionPipeline,
        port: RemoteFetchPort,
        stats: StatsRecorder,
        config: CrawlerConfig | None = None,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.port = port
        self.stats = stats
        self.config = config or CrawlerConfig()
        self.config.validate()

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the crawl loop in a background thread."""
        if self.is_running:
            logger.warning("Crawler is already running")
            return
        if self._thread is not None and self._thread.is_alive():
            # A stopped loop may still be finishing its chunk
            logger.info("Waiting for the previous crawl loop to exit")
            self._thread.join()

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._crawl_loop, name="viralcrawl-orchestrator", daemon=True
        )
        self._thread.start()
        logger.info(
            f"Starting viral crawler: batch_size={self.config.batch_size}, "
            f"concurrency={self.config.concurrency_limit}, "
            f"interval={self.config.cycle_interval}s"
        )

    def stop(self) -> None:
        """Ask the loop to stop; in-flight chunk work is allowed to finish."""
        logger.info("Stopping viral crawler...")
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the loop thread to exit."""
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._stop_event.is_set()
        )

    def _sleep(self, seconds: float) -> None:
        """Throttle delay that returns early on stop."""
        if seconds > 0:
            self._stop_event.wait(seconds)

    def _crawl_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                report = self.run_cycle()
                if report.rate_limited:
                    logger.warning(
                        f"Rate limited on {report.rate_limited} task(s), "
                        f"backing off for {self.config.rate_limit_backoff}s"
                    )
                    self._sleep(self.config.rate_limit_backoff)
            except Exception:
                logger.exception("Error in crawl loop, retrying next cycle")
            self._sleep(self.config.cycle_interval)
        logger.info("Crawl loop stopped")

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self) -> CycleReport:
        """
        Run a single crawl cycle.

        Storage failures propagate after the claimed tasks are handed back
        (when the store still accepts that).
        """
        started = time.monotonic()
        report = CycleReport()

        if not self.port.is_session_ready():
            logger.warning("Remote session not ready, skipping crawl cycle")
            report.session_ready = False
        else:
            tasks = self.queue.claim_batch(self.config.batch_size)
            report.claimed = len(tasks)
            if tasks:
                logger.info(f"Processing batch of {len(tasks)} tasks")
                self._run_tasks(tasks, report)
                logger.info(f"Batch results: {report.summary()}")
            else:
                logger.info("No pending tasks, waiting...")

        if self.config.auto_backfill_priority is not None:
            report.backfilled = self.queue.backfill(self.config.auto_backfill_priority)

        report.stats = self.stats.snapshot()
        report.duration_seconds = round(time.monotonic() - started, 3)
        return report

    def _run_tasks(self, tasks: list[ClaimedTask], report: CycleReport) -> None:
        """Process claimed tasks and write back their outcomes."""
        results: list[TaskResult] = []
        try:
            unprocessed = self._process_in_chunks(tasks, results, report)
        except Exception:
            resolved = {r.task_id for r in results} if self._resolve_quietly(results) else set()
            self._release_quietly([t.id for t in tasks if t.id not in resolved])
            raise

        self.queue.resolve_batch(results)
        report.results = results
        if unprocessed:
            report.released = self.queue.release([t.id for t in unprocessed])
            logger.info(f"Released {report.released} unprocessed task(s) back to the queue")

    def _resolve_quietly(self, results: list[TaskResult]) -> bool:
        """Record finished tasks after a failed cycle; False if the store refused."""
        if not results:
            return True
        try:
            self.queue.resolve_batch(results)
            return True
        except Exception as e:
            logger.error(f"Could not record {len(results)} finished task(s) after a failed cycle: {e}")
            return False

    def _release_quietly(self, task_ids: list[int]) -> None:
        try:
            self.queue.release(task_ids)
        except Exception as e:
            logger.error(f"Could not release {len(task_ids)} task(s) after a failed cycle: {e}")

    def _process_in_chunks(
        self, tasks: list[ClaimedTask], results: list[TaskResult], report: CycleReport
    ) -> list[ClaimedTask]:
        """
        Fan tasks out chunk by chunk.

        Returns:
            Tasks left unprocessed because of a stop request or a lost session
        """
        size = self.config.concurrency_limit
        chunks = [tasks[i : i + size] for i in range(0, len(tasks), size)]

        with (
            ThreadPoolExecutor(max_workers=size, thread_name_prefix="crawl") as task_pool,
            ThreadPoolExecutor(max_workers=size, thread_name_prefix="profile") as profile_pool,
        ):
            for index, chunk in enumerate(chunks):
                if index > 0:
                    self._sleep(self.config.min_chunk_delay)
                    if self._stop_event.is_set():
                        logger.info("Stop requested, leaving remaining chunks unprocessed")
                        return [t for c in chunks[index:] for t in c]

                futures = [
                    (task, task_pool.submit(self._process_single_task, task, profile_pool))
                    for task in chunk
                ]
                chunk_results = []
                for task, future in futures:
                    result, stored = self._collect(task, future)
                    chunk_results.append(result)
                    report.matches_stored += stored
                results.extend(chunk_results)

                if any(r.refund_attempt for r in chunk_results):
                    logger.warning("Remote session lost, deferring the rest of the batch")
                    return [t for c in chunks[index + 1 :] for t in c]

        return []

    def _collect(self, task: ClaimedTask, future: Future) -> tuple[TaskResult, int]:
        try:
            return future.result()
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error crawling player {task.player_id}: {e}")
            return self._failure(task, e), 0

    def _process_single_task(
        self, task: ClaimedTask, profile_pool: ThreadPoolExecutor
    ) -> tuple[TaskResult, int]:
        """Crawl one player; returns its classified result and the number of new matches."""
        try:
            stored = self._crawl_player(task.player_id, profile_pool)
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.warning(f"Error crawling player {task.player_id}: {e}")
            return self._failure(task, e), 0

        logger.info(f"Completed crawl for player {task.player_id}")
        return TaskResult(task.id, task.player_id, CrawlStatus.COMPLETED), stored

    def _failure(self, task: ClaimedTask, error: BaseException) -> TaskResult:
        status, refund = classify_failure(error, task, self.config.max_retries)
        if status == CrawlStatus.RATE_LIMITED:
            logger.info(f"  rate limited: {task.player_id}")
        elif status == CrawlStatus.FAILED:
            logger.info(f"  giving up on {task.player_id} after {task.attempts} attempt(s)")
        return TaskResult(
            task.id,
            task.player_id,
            status,
            error=str(error) or type(error).__name__,
            refund_attempt=refund,
        )

    def _crawl_player(self, player_id: str, profile_pool: ThreadPoolExecutor) -> int:
        """
        Fetch profile and match history for a player and ingest both.

        A profile failure only means "no profile"; a history failure fails the task.
        """
        timeout = self.config.fetch_timeout
        profile_future = profile_pool.submit(self.port.fetch_profile, player_id, timeout)

        matches = self.port.fetch_match_history(player_id, timeout)
        profile = self._await_profile(player_id, profile_future)

        if profile:
            self.pipeline.ingest_profile(player_id, profile)

        logger.info(f"  found {len(matches)} matches for player {player_id}")
        stored = 0
        for raw_match in matches:
            if self.pipeline.ingest_match(raw_match, player_id) is IngestOutcome.STORED:
                stored += 1
        return stored

    def _await_profile(self, player_id: str, future: Future) -> dict[str, Any] | None:
        try:
            return future.result(timeout=self.config.fetch_timeout)
        except Exception as e:
            logger.warning(f"  could not fetch profile for {player_id}: {e}")
            return None
