"""Shared fixtures: a throwaway SQLite store and the components built on it."""

import pytest

from viralcrawl.core.config import CrawlerConfig
from viralcrawl.infra.database import DatabaseManager
from viralcrawl.infra.task_queue import TaskQueue
from viralcrawl.pipeline.ingest import IngestionPipeline


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / "crawl.db")
    yield manager
    manager.dispose()


@pytest.fixture
def queue(db):
    return TaskQueue(db, max_retries=3)


@pytest.fixture
def pipeline(db):
    return IngestionPipeline(db)


@pytest.fixture
def fast_config():
    """Crawler settings without real pauses."""
    return CrawlerConfig(
        cycle_interval=0.01,
        min_chunk_delay=0.0,
        rate_limit_backoff=0.0,
        fetch_timeout=1.0,
    )
