"""
viralcrawl Persistence Layer.

Relational storage for discovered players, the crawl task queue, archived
matches with their rounds and per-player lines, and crawl health snapshots.

Uses SQLite by default with SQLAlchemy ORM. Any engine that understands
INSERT ... ON CONFLICT DO NOTHING (SQLite, PostgreSQL) can be used through a
full database URL.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".viralcrawl" / "crawl.db"

# Keeps multi-row inserts under SQLite's bound-parameter limit
INSERT_CHUNK_SIZE = 50

Base = declarative_base()


class CrawlStatus(StrEnum):
    """Lifecycle states of a crawl task."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RATE_LIMITED = "RATE_LIMITED"


# =============================================================================
# Database Models
# =============================================================================


class Player(Base):
    """A player known to the crawler, keyed by SteamID64."""

    __tablename__ = "players"

    id = Column(String(20), primary_key=True)
    account_id = Column(BigInteger, unique=True, nullable=True)

    # Profile
    player_level = Column(Integer)
    player_cur_xp = Column(Integer)
    vac_banned = Column(Boolean, default=False, nullable=False)
    penalty_seconds = Column(Integer)
    penalty_reason = Column(Integer)

    # Running totals across all ingested matches
    total_matches = Column(Integer, default=0, nullable=False)
    total_kills = Column(Integer, default=0, nullable=False)
    total_deaths = Column(Integer, default=0, nullable=False)
    total_assists = Column(Integer, default=0, nullable=False)
    total_mvps = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=_utc_now, nullable=False, index=True)
    last_seen = Column(DateTime, default=_utc_now, nullable=False)

    # Provenance only: the player whose match history surfaced this one
    discovered_from_id = Column(String(20), index=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "player_level": self.player_level,
            "player_cur_xp": self.player_cur_xp,
            "vac_banned": self.vac_banned,
            "penalty_seconds": self.penalty_seconds,
            "penalty_reason": self.penalty_reason,
            "total_matches": self.total_matches,
            "total_kills": self.total_kills,
            "total_deaths": self.total_deaths,
            "total_assists": self.total_assists,
            "total_mvps": self.total_mvps,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "discovered_from_id": self.discovered_from_id,
        }


class CrawlTask(Base):
    """Queued discovery work for one player."""

    __tablename__ = "crawl_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player_id = Column(String(20), ForeignKey("players.id"), unique=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default=CrawlStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_attempt = Column(DateTime)
    error = Column(Text)

    created_at = Column(DateTime, default=_utc_now, nullable=False)
    updated_at = Column(DateTime, default=_utc_now, onupdate=_utc_now, nullable=False)

    __table_args__ = (Index("idx_crawl_task_claim", "status", "priority", "created_at"),)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "player_id": self.player_id,
            "priority": self.priority,
            "status": self.status,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "error": self.error,
        }


class Match(Base):
    """Archived match metadata, one row per provider match id."""

    __tablename__ = "matches"

    id = Column(String(32), primary_key=True)
    match_time = Column(DateTime, index=True)
    map_name = Column(String(100))
    duration = Column(Integer)
    max_rounds = Column(Integer)
    round_count = Column(Integer, default=0, nullable=False)

    # Server / GOTV info
    server_ip = Column(BigInteger)
    tv_port = Column(Integer)
    game_type = Column(Integer)

    demo_url = Column(String(500))

    # Source round list as received, for re-parsing
    round_stats_raw = Column(Text)
    processed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utc_now, nullable=False)

    rounds = relationship(
        "Round",
        back_populates="match",
        cascade="all, delete-orphan",
        order_by="Round.round_index",
    )
    players = relationship("MatchPlayer", back_populates="match", cascade="all, delete-orphan")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "match_time": self.match_time.isoformat() if self.match_time else None,
            "map_name": self.map_name,
            "duration": self.duration,
            "max_rounds": self.max_rounds,
            "round_count": self.round_count,
            "game_type": self.game_type,
            "demo_url": self.demo_url,
            "processed": self.processed,
        }


class Round(Base):
    """Per-round snapshot, ordered inside its match."""

    __tablename__ = "rounds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(String(32), ForeignKey("matches.id"), nullable=False, index=True)
    round_index = Column(Integer, nullable=False)
    round_number = Column(Integer, nullable=False)

    map = Column(String(500))
    round_result = Column(Integer)
    match_result = Column(Integer)
    duration = Column(Integer)
    team_score_a = Column(Integer)
    team_score_b = Column(Integer)
    switched_teams = Column(Boolean)

    match = relationship("Match", back_populates="rounds")
    players = relationship("RoundPlayer", back_populates="round", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("match_id", "round_index", name="uq_round_match_index"),)


class RoundPlayer(Base):
    """One participant slot in one round."""

    __tablename__ = "round_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    round_id = Column(Integer, ForeignKey("rounds.id"), nullable=False, index=True)
    match_id = Column(String(32), ForeignKey("matches.id"), nullable=False)
    player_id = Column(String(20), ForeignKey("players.id"), nullable=False, index=True)
    slot = Column(Integer, nullable=False)

    kills = Column(Integer, default=0, nullable=False)
    deaths = Column(Integer, default=0, nullable=False)
    assists = Column(Integer, default=0, nullable=False)
    score = Column(Integer, default=0, nullable=False)
    mvps = Column(Integer, default=0, nullable=False)
    headshots = Column(Integer, default=0, nullable=False)
    enemy_kills = Column(Integer, default=0, nullable=False)

    round = relationship("Round", back_populates="players")

    __table_args__ = (
        UniqueConstraint("round_id", "slot", name="uq_round_player_slot"),
        Index("idx_round_player_match_player", "match_id", "player_id"),
    )


class MatchPlayer(Base):
    """A player's line for a whole match: the sum of their round lines."""

    __tablename__ = "match_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(String(32), ForeignKey("matches.id"), nullable=False, index=True)
    player_id = Column(String(20), ForeignKey("players.id"), nullable=False, index=True)
    slot = Column(Integer, nullable=False)
    rounds_played = Column(Integer, default=0, nullable=False)

    kills = Column(Integer, default=0, nullable=False)
    deaths = Column(Integer, default=0, nullable=False)
    assists = Column(Integer, default=0, nullable=False)
    score = Column(Integer, default=0, nullable=False)
    mvps = Column(Integer, default=0, nullable=False)
    headshots = Column(Integer, default=0, nullable=False)
    enemy_kills = Column(Integer, default=0, nullable=False)

    match = relationship("Match", back_populates="players")

    __table_args__ = (UniqueConstraint("match_id", "player_id", name="uq_match_player"),)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "match_id": self.match_id,
            "player_id": self.player_id,
            "slot": self.slot,
            "rounds_played": self.rounds_played,
            "kills": self.kills,
            "deaths": self.deaths,
            "assists": self.assists,
            "score": self.score,
            "mvps": self.mvps,
            "headshots": self.headshots,
            "enemy_kills": self.enemy_kills,
        }


class CrawlStatsSnapshot(Base):
    """Append-only crawl health counters, one row per orchestrator cycle."""

    __tablename__ = "crawl_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=_utc_now, nullable=False, index=True)

    total_players = Column(Integer, default=0, nullable=False)
    total_matches = Column(Integer, default=0, nullable=False)
    total_match_players = Column(Integer, default=0, nullable=False)
    total_rounds = Column(Integer, default=0, nullable=False)
    total_round_players = Column(Integer, default=0, nullable=False)
    matches_with_demo = Column(Integer, default=0, nullable=False)

    pending_crawls = Column(Integer, default=0, nullable=False)
    in_progress_crawls = Column(Integer, default=0, nullable=False)
    completed_crawls = Column(Integer, default=0, nullable=False)
    failed_crawls = Column(Integer, default=0, nullable=False)
    rate_limited_crawls = Column(Integer, default=0, nullable=False)

    avg_matches_per_player = Column(Float, default=0.0, nullable=False)
    avg_rounds_per_match = Column(Float, default=0.0, nullable=False)
    demo_coverage = Column(Float, default=0.0, nullable=False)


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Owns the engine and session factory for one process.

    Built once at startup and handed to the queue, pipeline and orchestrator.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        url: str | None = None,
        busy_timeout: float = 30.0,
        echo: bool = False,
    ):
        """
        Initialize database connection.

        Args:
            db_path: SQLite file path (ignored when url is given)
            url: Full SQLAlchemy database URL
            busy_timeout: Seconds a SQLite writer waits for a lock
            echo: Log emitted SQL
        """
        if url is None:
            self.db_path = Path(db_path) if db_path is not None else DEFAULT_DB_PATH
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{self.db_path}"
        else:
            self.db_path = None

        self.url = url
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            # Worker threads share the engine; writers wait on the file lock
            connect_args = {"check_same_thread": False, "timeout": busy_timeout}

        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        Base.metadata.create_all(self.engine)

        logger.info(f"Database initialized at: {self.engine.url.render_as_string()}")

    @classmethod
    def from_config(cls, config) -> "DatabaseManager":
        """Build a manager from a DatabaseConfig."""
        return cls(
            config.path,
            url=config.url,
            busy_timeout=config.busy_timeout,
            echo=config.echo,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def get_session(self) -> Session:
        """Get a database session."""
        return self.SessionLocal()

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()


def new_player_row(player_id: str, discovered_from_id: str | None = None) -> dict[str, Any]:
    """Column values for a freshly discovered player with empty totals."""
    now = _utc_now()
    return {
        "id": player_id,
        "account_id": None,
        "player_level": None,
        "player_cur_xp": None,
        "vac_banned": False,
        "penalty_seconds": None,
        "penalty_reason": None,
        "total_matches": 0,
        "total_kills": 0,
        "total_deaths": 0,
        "total_assists": 0,
        "total_mvps": 0,
        "created_at": now,
        "last_seen": now,
        "discovered_from_id": discovered_from_id,
    }


def insert_ignore(session: Session, model, rows: Iterable[dict[str, Any]], index_elements: list[str]) -> int:
    """
    Insert rows, silently skipping those that hit a unique key.

    Args:
        session: Active session (the caller owns commit/rollback)
        model: Mapped class to insert into
        rows: Column dictionaries
        index_elements: Conflict target columns

    Returns:
        Number of rows actually inserted
    """
    rows = list(rows)
    if not rows:
        return 0

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")

    inserted = 0
    for start in range(0, len(rows), INSERT_CHUNK_SIZE):
        stmt = insert(model).values(rows[start : start + INSERT_CHUNK_SIZE])
        result = session.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))
        inserted += max(result.rowcount or 0, 0)
    return inserted
