"""
viralcrawl Core - configuration shared by every component.
"""

from viralcrawl.core.config import (
    CrawlerConfig,
    DatabaseConfig,
    LoggingConfig,
    ViralCrawlConfig,
    load_config,
    setup_logging,
)

__all__ = [
    "CrawlerConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "ViralCrawlConfig",
    "load_config",
    "setup_logging",
]
