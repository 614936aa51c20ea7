"""
Configuration Management for viralcrawl

Provides configuration loading from multiple sources:
- Default values
- Configuration files (YAML, TOML, JSON)
- Environment variables

Configuration precedence (highest to lowest):
1. Environment variables (VIRALCRAWL_*)
2. Configuration file
3. Default values
"""

import json
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration Dataclasses
# ============================================================================


@dataclass
class CrawlerConfig:
    """Scheduling and backoff knobs for the crawl orchestrator."""

    # Pause between two cycles
    cycle_interval: float = 1.0

    # Tasks claimed per cycle
    batch_size: int = 20

    # Tasks fetched concurrently; the only admission control on the remote source
    concurrency_limit: int = 10

    # Pause between two concurrency chunks of the same cycle
    min_chunk_delay: float = 0.5

    # Claims per task before it is given up
    max_retries: int = 3

    # Extra pause after a cycle that hit the rate limiter
    rate_limit_backoff: float = 30.0

    # Time bound handed to every remote fetch
    fetch_timeout: float = 30.0

    seed_priority: int = 100
    backfill_priority: int = 10

    # Enqueue discovered players after every cycle (None = manual backfill only)
    auto_backfill_priority: int | None = None

    def validate(self) -> None:
        """Raise ValueError for settings the orchestrator cannot run with."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.concurrency_limit < 1:
            raise ValueError(
                f"concurrency_limit must be positive, got {self.concurrency_limit}"
            )
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be positive, got {self.max_retries}")
        for name in ("cycle_interval", "min_chunk_delay", "rate_limit_backoff", "fetch_timeout"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")


@dataclass
class DatabaseConfig:
    """Configuration for the relational store."""

    # Full SQLAlchemy URL; overrides path when set
    url: str | None = None
    path: str = str(Path.home() / ".viralcrawl" / "crawl.db")

    # Seconds a SQLite writer waits on a locked database
    busy_timeout: float = 30.0
    echo: bool = False


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: str | None = None
    file_max_bytes: int = 10 * 1024 * 1024  # 10MB
    file_backup_count: int = 5


@dataclass
class ViralCrawlConfig:
    """Main configuration container."""

    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Version of the config format
    config_version: str = "1.0"


# ============================================================================
# Configuration Loading
# ============================================================================


def get_default_config_paths() -> list[Path]:
    """Get the default paths to search for configuration files."""
    paths = []

    # Current directory
    paths.append(Path.cwd() / "viralcrawl.yaml")
    paths.append(Path.cwd() / "viralcrawl.toml")
    paths.append(Path.cwd() / "viralcrawl.json")

    # XDG config directory
    home = Path.home()
    xdg_config = os.environ.get("XDG_CONFIG_HOME", str(home / ".config"))
    paths.append(Path(xdg_config) / "viralcrawl" / "config.yaml")
    paths.append(Path(xdg_config) / "viralcrawl" / "config.toml")

    return paths


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from a YAML file."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from a TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from a JSON file."""
    with open(path) as f:
        return json.load(f)


def load_config_file(path: Path) -> dict[str, Any]:
    """Load configuration from a file, detecting format from extension."""
    if not path.exists():
        return {}

    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return load_yaml_config(path)
    elif suffix == ".toml":
        return load_toml_config(path)
    elif suffix == ".json":
        return load_json_config(path)
    else:
        logger.warning(f"Unknown config file format: {suffix}")
        return {}


ENV_MAPPINGS = {
    "VIRALCRAWL_LOG_LEVEL": ("logging", "level"),
    "VIRALCRAWL_LOG_FILE": ("logging", "file"),
    "VIRALCRAWL_DATABASE_URL": ("database", "url"),
    "VIRALCRAWL_DB_PATH": ("database", "path"),
    "VIRALCRAWL_CYCLE_INTERVAL": ("crawler", "cycle_interval"),
    "VIRALCRAWL_BATCH_SIZE": ("crawler", "batch_size"),
    "VIRALCRAWL_CONCURRENCY": ("crawler", "concurrency_limit"),
    "VIRALCRAWL_MIN_CHUNK_DELAY": ("crawler", "min_chunk_delay"),
    "VIRALCRAWL_MAX_RETRIES": ("crawler", "max_retries"),
    "VIRALCRAWL_RATE_LIMIT_BACKOFF": ("crawler", "rate_limit_backoff"),
    "VIRALCRAWL_FETCH_TIMEOUT": ("crawler", "fetch_timeout"),
    "VIRALCRAWL_AUTO_BACKFILL_PRIORITY": ("crawler", "auto_backfill_priority"),
}


def _convert_env_value(value: str) -> Any:
    """Best-effort type conversion for environment values."""
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.lstrip("-").isdigit():
        return int(value)
    try:
        return float(value)
    except ValueError:
        return value


def load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}

    for env_var, (section, key) in ENV_MAPPINGS.items():
        value = os.environ.get(env_var)
        if value is not None:
            config.setdefault(section, {})[key] = _convert_env_value(value)

    return config


def merge_configs(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two configuration dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def dict_to_config(data: dict[str, Any]) -> ViralCrawlConfig:
    """Convert a dictionary to ViralCrawlConfig, ignoring unknown keys."""
    config = ViralCrawlConfig()

    for section_name in ("crawler", "database", "logging"):
        section = getattr(config, section_name)
        for key, value in (data.get(section_name) or {}).items():
            if hasattr(section, key):
                setattr(section, key, value)
            else:
                logger.warning(f"Ignoring unknown config key: {section_name}.{key}")

    return config


def load_config(config_file: Path | None = None, include_env: bool = True) -> ViralCrawlConfig:
    """
    Load configuration from all sources.

    Args:
        config_file: Explicit path to a config file (optional)
        include_env: Whether to include environment variables

    Returns:
        Merged and validated ViralCrawlConfig
    """
    config_data: dict[str, Any] = {}

    if config_file:
        config_data = load_config_file(config_file)
        logger.info(f"Loaded config from: {config_file}")
    else:
        for path in get_default_config_paths():
            if path.exists():
                config_data = load_config_file(path)
                logger.info(f"Loaded config from: {path}")
                break

    if include_env:
        config_data = merge_configs(config_data, load_env_config())

    config = dict_to_config(config_data)
    config.crawler.validate()
    return config


def config_to_dict(config: ViralCrawlConfig) -> dict[str, Any]:
    """Convert ViralCrawlConfig to a dictionary."""
    return asdict(config)


def save_config(config: ViralCrawlConfig, path: Path) -> None:
    """
    Save configuration to a file.

    Args:
        config: Configuration to save
        path: Path to save to (.yaml/.yml or .json)
    """
    data = config_to_dict(config)
    suffix = path.suffix.lower()

    if suffix in (".yaml", ".yml"):
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    elif suffix == ".json":
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
    else:
        raise ValueError(f"Unknown config format: {suffix}")

    logger.info(f"Saved config to: {path}")


# ============================================================================
# Logging Setup
# ============================================================================


def setup_logging(config: LoggingConfig) -> None:
    """Configure the root logger from a LoggingConfig."""
    root = logging.getLogger()
    root.setLevel(config.level.upper())

    formatter = logging.Formatter(config.format)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                config.file,
                maxBytes=config.file_max_bytes,
                backupCount=config.file_backup_count,
            )
        )

    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
