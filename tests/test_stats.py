"""Tests for crawl statistics."""

import pytest

from viralcrawl.infra.database import CrawlStatus
from viralcrawl.pipeline.stats import StatsRecorder

from factories import P1, P2, make_match, make_round

DEMO = "http://replay1.valve.net/730/0001.dem.bz2"


@pytest.fixture
def recorder(db, queue):
    return StatsRecorder(db, queue)


class TestCollect:
    def test_empty_store(self, recorder):
        view = recorder.collect()

        assert view.total_players == 0
        assert view.total_matches == 0
        assert view.avg_matches_per_player == 0
        assert view.avg_rounds_per_match == 0
        assert view.demo_coverage == 0
        assert view.queue == {status.value: 0 for status in CrawlStatus}

    def test_counts_and_rounded_ratios(self, recorder, pipeline, queue):
        pipeline.ingest_match(
            make_match("7001", [make_round([1, 2]), make_round([1, 2], map_name=DEMO)]), P1
        )
        pipeline.ingest_match(make_match("7002", [make_round([1, 2])]), P1)
        pipeline.ingest_match(make_match("7003", [make_round([1, 2])]), P1)
        queue.enqueue(P1, priority=100)

        view = recorder.collect()

        assert view.total_players == 2
        assert view.total_matches == 3
        assert view.total_match_players == 6
        assert view.total_rounds == 4
        assert view.total_round_players == 8
        assert view.matches_with_demo == 1
        assert view.avg_matches_per_player == 3.0
        assert view.avg_rounds_per_match == 1.33
        assert view.demo_coverage == 0.33
        assert view.queue[CrawlStatus.PENDING.value] == 1


class TestSnapshots:
    def test_snapshot_is_recorded(self, recorder, queue):
        queue.enqueue_many([P1, P2], priority=5)

        view = recorder.snapshot()
        latest = recorder.latest_snapshot()

        assert view.recorded_at is not None
        assert latest.total_players == 2
        assert latest.queue[CrawlStatus.PENDING.value] == 2

    def test_latest_snapshot_when_none_recorded(self, recorder):
        assert recorder.latest_snapshot() is None

    def test_history_newest_first(self, recorder, queue):
        recorder.snapshot()
        queue.enqueue(P1, priority=5)
        recorder.snapshot()
        queue.enqueue(P2, priority=5)
        recorder.snapshot()

        history = recorder.history(limit=2)

        assert [h.total_players for h in history] == [2, 1]

    def test_to_dict(self, recorder):
        data = recorder.snapshot().to_dict()

        assert data["total_players"] == 0
        assert isinstance(data["recorded_at"], str)
        assert data["is_running"] is False
