"""Tests for the persisted crawl task queue."""

from viralcrawl.infra.database import CrawlStatus, CrawlTask
from viralcrawl.infra.task_queue import TaskQueue, TaskResult

from factories import P1, P2, P3


def _resolve(queue, task, status, **kwargs):
    return queue.resolve_batch([TaskResult(task.id, task.player_id, status, **kwargs)])


class TestEnqueue:
    def test_new_task_is_pending_with_zero_attempts(self, queue):
        assert queue.enqueue(P1, priority=100) is True

        task = queue.get_task(P1)
        assert task["status"] == CrawlStatus.PENDING.value
        assert task["priority"] == 100
        assert task["attempts"] == 0

    def test_enqueue_creates_player_row(self, db, queue):
        from viralcrawl.infra.database import Player

        queue.enqueue(P1, priority=5)
        session = db.get_session()
        try:
            assert session.get(Player, P1) is not None
        finally:
            session.close()

    def test_reenqueue_keeps_single_task_and_updates_priority(self, db, queue):
        queue.enqueue(P1, priority=5)
        assert queue.enqueue(P1, priority=100) is False

        session = db.get_session()
        try:
            assert session.query(CrawlTask).count() == 1
        finally:
            session.close()
        assert queue.get_task(P1)["priority"] == 100

    def test_reenqueue_moves_finished_task_back_to_pending(self, queue):
        queue.enqueue(P1, priority=5)
        (task,) = queue.claim_batch(1)
        _resolve(queue, task, CrawlStatus.COMPLETED)

        queue.enqueue(P1, priority=100)
        refreshed = queue.get_task(P1)
        assert refreshed["status"] == CrawlStatus.PENDING.value
        assert refreshed["attempts"] == 1

    def test_reset_attempts_flag(self, queue):
        queue.enqueue(P1, priority=5)
        (task,) = queue.claim_batch(1)
        _resolve(queue, task, CrawlStatus.FAILED, error="boom")

        queue.enqueue(P1, priority=5, reset_attempts=True)
        assert queue.get_task(P1)["attempts"] == 0

    def test_enqueue_many_counts_only_new_tasks(self, queue):
        queue.enqueue(P1, priority=5)
        assert queue.enqueue_many([P1, P2, P3, P2], priority=5) == 2


class TestClaim:
    def test_priority_then_creation_order(self, queue):
        """[5, 5, 1] -> claim_batch(2) returns both priority-5 tasks in creation order."""
        queue.enqueue(P1, priority=5)
        queue.enqueue(P2, priority=5)
        queue.enqueue(P3, priority=1)

        claimed = queue.claim_batch(2)

        assert [t.player_id for t in claimed] == [P1, P2]
        assert queue.get_task(P3)["status"] == CrawlStatus.PENDING.value

    def test_higher_priority_jumps_ahead(self, queue):
        queue.enqueue(P1, priority=1)
        queue.enqueue(P2, priority=100)

        (first,) = queue.claim_batch(1)
        assert first.player_id == P2

    def test_claim_marks_in_progress_and_counts_attempt(self, queue):
        queue.enqueue(P1, priority=5)

        (task,) = queue.claim_batch(5)

        assert task.attempts == 1
        stored = queue.get_task(P1)
        assert stored["status"] == CrawlStatus.IN_PROGRESS.value
        assert stored["attempts"] == 1
        assert stored["last_attempt"] is not None

    def test_claimed_task_is_not_claimed_again(self, db, queue):
        queue.enqueue_many([P1, P2], priority=5)
        other_process = TaskQueue(db)

        first = queue.claim_batch(10)
        second = other_process.claim_batch(10)

        assert len(first) == 2
        assert second == []

    def test_zero_limit(self, queue):
        queue.enqueue(P1, priority=5)
        assert queue.claim_batch(0) == []

    def test_retry_ceiling_excludes_exhausted_tasks(self, db):
        queue = TaskQueue(db, max_retries=2)
        queue.enqueue(P1, priority=5)

        for _ in range(2):
            (task,) = queue.claim_batch(1)
            _resolve(queue, task, CrawlStatus.PENDING, error="try again")

        assert queue.get_task(P1)["attempts"] == 2
        assert queue.claim_batch(1) == []

    def test_terminal_and_rate_limited_tasks_are_not_claimed(self, queue):
        queue.enqueue_many([P1, P2, P3], priority=5)
        t1, t2, t3 = queue.claim_batch(3)
        queue.resolve_batch(
            [
                TaskResult(t1.id, t1.player_id, CrawlStatus.COMPLETED),
                TaskResult(t2.id, t2.player_id, CrawlStatus.FAILED, error="x"),
                TaskResult(t3.id, t3.player_id, CrawlStatus.RATE_LIMITED, error="slow down"),
            ]
        )

        assert queue.claim_batch(10) == []


class TestResolve:
    def test_empty_batch(self, queue):
        assert queue.resolve_batch([]) == 0

    def test_bulk_statuses_and_errors(self, queue):
        queue.enqueue_many([P1, P2], priority=5)
        t1, t2 = queue.claim_batch(2)

        transitioned = queue.resolve_batch(
            [
                TaskResult(t1.id, t1.player_id, CrawlStatus.COMPLETED),
                TaskResult(t2.id, t2.player_id, CrawlStatus.FAILED, error="boom"),
            ]
        )

        assert transitioned == 2
        assert queue.get_task(P1)["status"] == CrawlStatus.COMPLETED.value
        failed = queue.get_task(P2)
        assert failed["status"] == CrawlStatus.FAILED.value
        assert failed["error"] == "boom"

    def test_completed_clears_previous_error(self, queue):
        queue.enqueue(P1, priority=5)
        (task,) = queue.claim_batch(1)
        _resolve(queue, task, CrawlStatus.PENDING, error="first try failed")
        (task,) = queue.claim_batch(1)
        _resolve(queue, task, CrawlStatus.COMPLETED)

        assert queue.get_task(P1)["error"] is None

    def test_stale_result_is_ignored(self, queue):
        """A task that already left IN_PROGRESS is not touched again."""
        queue.enqueue(P1, priority=5)
        (task,) = queue.claim_batch(1)
        _resolve(queue, task, CrawlStatus.COMPLETED)

        assert _resolve(queue, task, CrawlStatus.FAILED, error="late") == 0
        assert queue.get_task(P1)["status"] == CrawlStatus.COMPLETED.value

    def test_refunded_attempt(self, queue):
        queue.enqueue(P1, priority=5)
        (task,) = queue.claim_batch(1)

        _resolve(queue, task, CrawlStatus.PENDING, error="no session", refund_attempt=True)

        stored = queue.get_task(P1)
        assert stored["status"] == CrawlStatus.PENDING.value
        assert stored["attempts"] == 0

    def test_release(self, queue):
        queue.enqueue_many([P1, P2], priority=5)
        tasks = queue.claim_batch(2)

        assert queue.release([t.id for t in tasks]) == 2
        for pid in (P1, P2):
            stored = queue.get_task(pid)
            assert stored["status"] == CrawlStatus.PENDING.value
            assert stored["attempts"] == 0


class TestMaintenance:
    def test_reset_stalled(self, queue):
        queue.enqueue_many([P1, P2, P3], priority=5)
        t1, t2, t3 = queue.claim_batch(3)
        queue.resolve_batch(
            [
                TaskResult(t2.id, t2.player_id, CrawlStatus.RATE_LIMITED, error="slow"),
                TaskResult(t3.id, t3.player_id, CrawlStatus.COMPLETED),
            ]
        )

        assert queue.reset_stalled() == 2

        for pid in (P1, P2):
            stored = queue.get_task(pid)
            assert stored["status"] == CrawlStatus.PENDING.value
            assert stored["attempts"] == 0
        assert queue.get_task(P3)["status"] == CrawlStatus.COMPLETED.value

    def test_reset_stalled_can_keep_rate_limited(self, queue):
        queue.enqueue_many([P1, P2], priority=5)
        t1, t2 = queue.claim_batch(2)
        _resolve(queue, t2, CrawlStatus.RATE_LIMITED, error="slow")

        assert queue.reset_stalled(include_rate_limited=False) == 1
        assert queue.get_task(P2)["status"] == CrawlStatus.RATE_LIMITED.value

    def test_status_counts_are_zero_filled(self, queue):
        counts = queue.status_counts()
        assert counts == {status.value: 0 for status in CrawlStatus}

        queue.enqueue_many([P1, P2], priority=5)
        queue.claim_batch(1)
        counts = queue.status_counts()
        assert counts[CrawlStatus.PENDING.value] == 1
        assert counts[CrawlStatus.IN_PROGRESS.value] == 1

    def test_get_task_unknown_player(self, queue):
        assert queue.get_task(P1) is None


class TestBackfill:
    def test_queues_only_players_without_task(self, queue, pipeline):
        pipeline.ensure_players([P1, P2, P3])
        queue.enqueue(P1, priority=100)

        assert queue.backfill(priority=10) == 2
        assert queue.get_task(P2)["priority"] == 10
        assert queue.get_task(P3)["priority"] == 10
        assert queue.get_task(P1)["priority"] == 100

    def test_is_idempotent(self, queue, pipeline):
        pipeline.ensure_players([P1, P2])
        queue.backfill(priority=10)
        assert queue.backfill(priority=10) == 0

    def test_limit_takes_oldest_players_first(self, queue, pipeline):
        pipeline.ensure_players([P1])
        pipeline.ensure_players([P2])
        pipeline.ensure_players([P3])

        assert queue.backfill(priority=10, limit=2) == 2
        assert queue.get_task(P3) is None
