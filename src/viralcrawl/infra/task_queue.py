"""
Crawl Task Queue - persisted discovery work.

One task per player. Tasks move PENDING -> IN_PROGRESS on claim and are
written back in bulk once the orchestrator has classified their outcome.
Claims are compare-and-swap updates on the status column, so several
orchestrator processes can share one database without double-claiming.

Tasks are never deleted: finished rows keep players out of future backfills.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update

from viralcrawl.infra.database import (
    CrawlStatus,
    CrawlTask,
    DatabaseManager,
    Player,
    insert_ignore,
    new_player_row,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class ClaimedTask:
    """A task handed to the orchestrator; attempts already includes this claim."""

    id: int
    player_id: str
    priority: int
    attempts: int


@dataclass(frozen=True)
class TaskResult:
    """Classified outcome of one claimed task."""

    task_id: int
    player_id: str
    status: CrawlStatus
    error: str | None = None
    # Revert the claim's attempt increment (task was not really attempted)
    refund_attempt: bool = False


class TaskQueue:
    """
    Persistent crawl task queue.

    Example:
        >>> queue = TaskQueue(db, max_retries=3)
        >>> queue.enqueue("76561197960265729", priority=100)
        >>> tasks = queue.claim_batch(20)
    """

    def __init__(self, db_manager: DatabaseManager, max_retries: int = DEFAULT_MAX_RETRIES):
        self.db = db_manager
        self.max_retries = max_retries

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(self, player_id: str, priority: int, *, reset_attempts: bool = False) -> bool:
        """
        Queue a player for crawling, or refresh its existing task.

        An existing task gets the new priority and goes back to PENDING;
        its attempt counter is kept unless reset_attempts is set.

        Returns:
            True if a new task was created
        """
        return self.enqueue_many([player_id], priority, reset_attempts=reset_attempts) == 1

    def enqueue_many(
        self, player_ids: Iterable[str], priority: int, *, reset_attempts: bool = False
    ) -> int:
        """
        Bulk form of enqueue. Player rows are created when missing.

        Returns:
            Number of newly created tasks
        """
        player_ids = list(dict.fromkeys(player_ids))
        if not player_ids:
            return 0

        session = self.db.get_session()
        try:
            now = _utc_now()
            insert_ignore(session, Player, [new_player_row(pid) for pid in player_ids], ["id"])
            created = insert_ignore(
                session,
                CrawlTask,
                [self._new_task_row(pid, priority, now) for pid in player_ids],
                ["player_id"],
            )

            values: dict[str, Any] = {
                "priority": priority,
                "status": CrawlStatus.PENDING.value,
                "updated_at": now,
            }
            if reset_attempts:
                values["attempts"] = 0
            session.execute(
                update(CrawlTask)
                .where(CrawlTask.player_id.in_(player_ids))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()

            logger.info(
                f"Enqueued {len(player_ids)} player(s) at priority {priority} "
                f"({created} new, {len(player_ids) - created} refreshed)"
            )
            return created
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to enqueue players: {e}")
            raise
        finally:
            session.close()

    def backfill(self, priority: int, limit: int | None = None) -> int:
        """
        Enqueue known players that have never had a task, oldest first.

        Returns:
            Number of tasks created
        """
        session = self.db.get_session()
        try:
            has_task = select(CrawlTask.id).where(CrawlTask.player_id == Player.id).exists()
            query = (
                select(Player.id)
                .where(~has_task)
                .order_by(Player.created_at.asc(), Player.id.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            player_ids = list(session.execute(query).scalars())

            now = _utc_now()
            created = insert_ignore(
                session,
                CrawlTask,
                [self._new_task_row(pid, priority, now) for pid in player_ids],
                ["player_id"],
            )
            session.commit()

            if created:
                logger.info(f"Backfilled {created} discovered player(s) at priority {priority}")
            return created
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to backfill crawl queue: {e}")
            raise
        finally:
            session.close()

    @staticmethod
    def _new_task_row(player_id: str, priority: int, now: datetime) -> dict[str, Any]:
        return {
            "player_id": player_id,
            "priority": priority,
            "status": CrawlStatus.PENDING.value,
            "attempts": 0,
            "last_attempt": None,
            "error": None,
            "created_at": now,
            "updated_at": now,
        }

    # =========================================================================
    # Claim / resolve
    # =========================================================================

    def claim_batch(self, limit: int) -> list[ClaimedTask]:
        """
        Claim up to `limit` eligible tasks, highest priority first, FIFO within a tier.

        Each task is switched to IN_PROGRESS with its attempt counter bumped.
        A task another process claimed in the meantime is skipped.
        """
        if limit <= 0:
            return []

        session = self.db.get_session()
        try:
            candidates = session.execute(
                select(CrawlTask.id, CrawlTask.player_id, CrawlTask.priority, CrawlTask.attempts)
                .where(
                    CrawlTask.status == CrawlStatus.PENDING.value,
                    CrawlTask.attempts < self.max_retries,
                )
                .order_by(
                    CrawlTask.priority.desc(), CrawlTask.created_at.asc(), CrawlTask.id.asc()
                )
                .limit(limit)
            ).all()

            now = _utc_now()
            claimed = []
            for row in candidates:
                result = session.execute(
                    update(CrawlTask)
                    .where(
                        CrawlTask.id == row.id,
                        CrawlTask.status == CrawlStatus.PENDING.value,
                    )
                    .values(
                        status=CrawlStatus.IN_PROGRESS.value,
                        attempts=CrawlTask.attempts + 1,
                        last_attempt=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(
                        ClaimedTask(row.id, row.player_id, row.priority, row.attempts + 1)
                    )
                else:
                    logger.debug(f"Task {row.id} was claimed elsewhere, skipping")
            session.commit()
            return claimed
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to claim crawl tasks: {e}")
            raise
        finally:
            session.close()

    def resolve_batch(self, results: Iterable[TaskResult]) -> int:
        """
        Write back classified outcomes.

        One bulk UPDATE per target status plus per-task error text. Only
        tasks still IN_PROGRESS are touched, so stale or repeated results
        are harmless.

        Returns:
            Number of tasks transitioned
        """
        results = list(results)
        if not results:
            return 0

        session = self.db.get_session()
        try:
            now = _utc_now()
            in_progress = CrawlTask.status == CrawlStatus.IN_PROGRESS.value

            for r in results:
                if r.error:
                    session.execute(
                        update(CrawlTask)
                        .where(CrawlTask.id == r.task_id, in_progress)
                        .values(error=r.error[:2000])
                        .execution_options(synchronize_session=False)
                    )

            refunds = [r.task_id for r in results if r.refund_attempt]
            if refunds:
                self._refund_attempts(session, refunds)

            by_status: dict[CrawlStatus, list[int]] = defaultdict(list)
            for r in results:
                by_status[r.status].append(r.task_id)

            transitioned = 0
            for status, task_ids in by_status.items():
                values: dict[str, Any] = {"status": status.value, "updated_at": now}
                if status == CrawlStatus.COMPLETED:
                    values["error"] = None
                result = session.execute(
                    update(CrawlTask)
                    .where(CrawlTask.id.in_(task_ids), in_progress)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                transitioned += result.rowcount or 0

            session.commit()
            return transitioned
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to resolve crawl tasks: {e}")
            raise
        finally:
            session.close()

    def release(self, task_ids: Iterable[int]) -> int:
        """Hand unprocessed IN_PROGRESS tasks back to PENDING, refunding the claim."""
        task_ids = list(task_ids)
        if not task_ids:
            return 0

        session = self.db.get_session()
        try:
            self._refund_attempts(session, task_ids)
            result = session.execute(
                update(CrawlTask)
                .where(
                    CrawlTask.id.in_(task_ids),
                    CrawlTask.status == CrawlStatus.IN_PROGRESS.value,
                )
                .values(status=CrawlStatus.PENDING.value, updated_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to release crawl tasks: {e}")
            raise
        finally:
            session.close()

    @staticmethod
    def _refund_attempts(session, task_ids: list[int]) -> None:
        session.execute(
            update(CrawlTask)
            .where(
                CrawlTask.id.in_(task_ids),
                CrawlTask.status == CrawlStatus.IN_PROGRESS.value,
                CrawlTask.attempts > 0,
            )
            .values(attempts=CrawlTask.attempts - 1)
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # Maintenance / inspection
    # =========================================================================

    def reset_stalled(self, include_rate_limited: bool = True) -> int:
        """
        Put IN_PROGRESS (and optionally RATE_LIMITED) tasks back to PENDING
        with attempts cleared. Used to recover from a crashed cycle.

        Returns:
            Number of tasks reset
        """
        statuses = [CrawlStatus.IN_PROGRESS.value]
        if include_rate_limited:
            statuses.append(CrawlStatus.RATE_LIMITED.value)

        session = self.db.get_session()
        try:
            result = session.execute(
                update(CrawlTask)
                .where(CrawlTask.status.in_(statuses))
                .values(status=CrawlStatus.PENDING.value, attempts=0, updated_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            reset = result.rowcount or 0
            logger.info(f"Reset {reset} stalled task(s) to PENDING")
            return reset
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to reset stalled tasks: {e}")
            raise
        finally:
            session.close()

    def status_counts(self) -> dict[str, int]:
        """Task count per status, zero-filled."""
        session = self.db.get_session()
        try:
            rows = session.execute(
                select(CrawlTask.status, func.count(CrawlTask.id)).group_by(CrawlTask.status)
            ).all()
            counts = {status.value: 0 for status in CrawlStatus}
            counts.update({status: count for status, count in rows})
            return counts
        finally:
            session.close()

    def get_task(self, player_id: str) -> dict[str, Any] | None:
        """Task details for a player, or None if never queued."""
        session = self.db.get_session()
        try:
            task = session.query(CrawlTask).filter(CrawlTask.player_id == player_id).first()
            return task.to_dict() if task else None
        finally:
            session.close()
