"""
viralcrawl - Viral crawler for CS match records

Starts from a few seed players, pulls their recent match history from the game
coordinator, stores every match with its per-round player lines, and grows the
crawl through the players it finds in those matches.

Usage:
    from viralcrawl import CrawlerService, DatabaseManager, ReplaySource

    service = CrawlerService(DatabaseManager("crawl.db"), ReplaySource("./replay"))
    service.seed(["76561197960265729"])
    service.run_once()
"""

__version__ = "0.1.0"
__author__ = "viralcrawl Contributors"


def __getattr__(name):
    """Lazy import so that `import viralcrawl` stays cheap."""
    if name == "CrawlerService":
        from viralcrawl.service import CrawlerService
        return CrawlerService
    elif name == "DatabaseManager":
        from viralcrawl.infra.database import DatabaseManager
        return DatabaseManager
    elif name == "ReplaySource":
        from viralcrawl.integrations.replay_source import ReplaySource
        return ReplaySource
    elif name == "CallbackClientAdapter":
        from viralcrawl.integrations.callback_adapter import CallbackClientAdapter
        return CallbackClientAdapter
    elif name == "load_config":
        from viralcrawl.core.config import load_config
        return load_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    "CrawlerService",
    "DatabaseManager",
    "ReplaySource",
    "CallbackClientAdapter",
    "load_config",
]
