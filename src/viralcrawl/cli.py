"""
viralcrawl CLI - Command Line Interface for the match crawler

Provides commands for:
- Seeding players into the crawl queue
- Backfilling discovered players
- Resetting stalled tasks
- Showing crawl statistics
- Running the crawler against recorded payloads
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from viralcrawl import __version__
from viralcrawl.core.config import ViralCrawlConfig, load_config, setup_logging
from viralcrawl.infra.database import CrawlStatus, DatabaseManager
from viralcrawl.integrations.remote import RemoteFetchPort
from viralcrawl.integrations.replay_source import ReplaySource
from viralcrawl.service import CrawlerService

app = typer.Typer(
    name="viralcrawl",
    help="Viral crawler for CS match records - discovers players through the matches they played",
    add_completion=False,
)
console = Console()

logger = logging.getLogger(__name__)


@dataclass
class CliState:
    config: ViralCrawlConfig
    db_path: Optional[Path] = None

    def open_service(self, port: Optional[RemoteFetchPort] = None) -> CrawlerService:
        db_config = self.config.database
        if self.db_path is not None:
            db = DatabaseManager(self.db_path, busy_timeout=db_config.busy_timeout)
        else:
            db = DatabaseManager.from_config(db_config)
        return CrawlerService(db, port, self.config.crawler)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]viralcrawl[/bold blue] v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable verbose output"),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration file (.yaml, .toml or .json)",
        exists=True,
        dir_okay=False,
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", help="SQLite database file (overrides the configured database)"
    ),
) -> None:
    """viralcrawl - viral match crawler"""
    try:
        config = load_config(config_file)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    ctx.obj = CliState(config=config, db_path=db_path)


@app.command()
def seed(
    ctx: typer.Context,
    player_ids: list[str] = typer.Argument(
        ..., help="SteamID64s or short account ids to crawl first"
    ),
) -> None:
    """
    Queue players at seed priority.

    Existing tasks for these players are moved back to PENDING.
    """
    service = ctx.obj.open_service()
    try:
        seeded = service.seed(player_ids)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Seeded {len(seeded)} player(s)[/green]")
    for player_id in seeded:
        console.print(f"  {player_id}")


@app.command()
def backfill(
    ctx: typer.Context,
    priority: Optional[int] = typer.Option(
        None, "--priority", "-p", help="Task priority (defaults to the configured backfill priority)"
    ),
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", min=1, help="Maximum number of players to queue"
    ),
) -> None:
    """Queue discovered players that have never been crawled."""
    service = ctx.obj.open_service()
    created = service.backfill(priority, limit)
    console.print(f"[green]Queued {created} discovered player(s)[/green]")


@app.command()
def reset(
    ctx: typer.Context,
    keep_rate_limited: bool = typer.Option(
        False, "--keep-rate-limited", help="Only reset IN_PROGRESS tasks"
    ),
) -> None:
    """Put stalled tasks back to PENDING with their attempts cleared."""
    service = ctx.obj.open_service()
    count = service.reset_stalled(include_rate_limited=not keep_rate_limited)
    console.print(f"[green]Reset {count} task(s)[/green]")


@app.command()
def stats(
    ctx: typer.Context,
    history: int = typer.Option(
        0, "--history", help="Also show the last N recorded snapshots", min=0
    ),
) -> None:
    """Show crawl statistics."""
    service = ctx.obj.open_service()
    view = service.get_crawl_stats()

    table = Table(title="Crawl Statistics", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    table.add_row("Players", str(view.total_players))
    table.add_row("Matches", str(view.total_matches))
    table.add_row("Match players", str(view.total_match_players))
    table.add_row("Rounds", str(view.total_rounds))
    table.add_row("Round players", str(view.total_round_players))
    table.add_row("Matches with demo", str(view.matches_with_demo))
    for status in CrawlStatus:
        table.add_row(f"Tasks {status.value.lower()}", str(view.queue[status.value]))
    table.add_row("Avg matches / player", f"{view.avg_matches_per_player:.2f}")
    table.add_row("Avg rounds / match", f"{view.avg_rounds_per_match:.2f}")
    table.add_row("Demo coverage", f"{view.demo_coverage:.2f}")
    console.print(table)

    if history:
        _display_history(service, history)


def _display_history(service: CrawlerService, limit: int) -> None:
    snapshots = service.stats.history(limit)
    if not snapshots:
        console.print("[yellow]No snapshots recorded yet[/yellow]")
        return

    table = Table(title="Snapshot History")
    table.add_column("Recorded", style="cyan")
    table.add_column("Players", justify="right")
    table.add_column("Matches", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Failed", justify="right")

    for snap in snapshots:
        table.add_row(
            snap.recorded_at.strftime("%Y-%m-%d %H:%M:%S") if snap.recorded_at else "-",
            str(snap.total_players),
            str(snap.total_matches),
            str(snap.queue[CrawlStatus.PENDING.value]),
            str(snap.queue[CrawlStatus.COMPLETED.value]),
            str(snap.queue[CrawlStatus.FAILED.value]),
        )
    console.print(table)


@app.command()
def run(
    ctx: typer.Context,
    replay_dir: Path = typer.Option(
        ...,
        "--replay-dir",
        "-r",
        help="Directory of recorded match histories and profiles",
        exists=True,
        file_okay=False,
        resolve_path=True,
    ),
    cycles: Optional[int] = typer.Option(
        None, "--cycles", "-n", min=1, help="Run N cycles and exit (default: run until Ctrl+C)"
    ),
) -> None:
    """
    Run the crawler against recorded payloads.

    With --cycles the crawl runs in the foreground; otherwise the background
    loop runs until interrupted.
    """
    service = ctx.obj.open_service(ReplaySource(replay_dir))
    console.print("\n[bold blue]viralcrawl[/bold blue] - Crawling\n")
    console.print(f"[cyan]Replay folder:[/cyan] {replay_dir}")

    if cycles is not None:
        for index in range(cycles):
            if index:
                time.sleep(service.config.cycle_interval)
            report = service.run_once()
            console.print(
                f"Cycle {index + 1}: claimed {report.claimed}, "
                f"stored {report.matches_stored} match(es), {report.summary()}"
            )
        return

    console.print("\nPress [bold]Ctrl+C[/bold] to stop...\n")
    service.start()
    try:
        while service.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping crawler...[/yellow]")
    finally:
        service.stop()


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
