"""Smoke tests for the command line interface."""

import json

import pytest
from typer.testing import CliRunner

from viralcrawl import __version__
from viralcrawl import cli
from viralcrawl.cli import app
from viralcrawl.infra.database import DatabaseManager
from viralcrawl.infra.task_queue import TaskQueue

from factories import P1, P2, make_match, make_round

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch, tmp_path):
    """Keep the CLI from reconfiguring the root logger during tests."""
    monkeypatch.setattr(cli, "setup_logging", lambda config: None)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "viralcrawl.yaml"
    path.write_text(
        f"database:\n  path: {tmp_path / 'cli.db'}\n"
        "crawler:\n  min_chunk_delay: 0\n  cycle_interval: 0\n  rate_limit_backoff: 0\n"
    )
    return path


def _invoke(config_file, *args):
    return runner.invoke(app, ["--config", str(config_file), *args])


class TestCli:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_seed_and_stats(self, config_file):
        result = _invoke(config_file, "seed", P1, "2")
        assert result.exit_code == 0, result.output
        assert "Seeded 2 player(s)" in result.output
        assert P2 in result.output

        result = _invoke(config_file, "stats")
        assert result.exit_code == 0, result.output
        assert "Crawl Statistics" in result.output

    def test_seed_rejects_invalid_id(self, config_file):
        result = _invoke(config_file, "seed", "bogus")
        assert result.exit_code == 1
        assert "Invalid player id" in result.output

    def test_db_option_overrides_config(self, tmp_path, config_file):
        db_path = tmp_path / "other.db"
        result = _invoke(config_file, "--db", str(db_path), "seed", P1)

        assert result.exit_code == 0, result.output
        assert TaskQueue(DatabaseManager(db_path)).get_task(P1) is not None

    def test_run_replay_then_backfill(self, tmp_path, config_file):
        replay = tmp_path / "replay"
        (replay / "matches").mkdir(parents=True)
        (replay / "matches" / f"{P1}.json").write_text(
            json.dumps([make_match("9001", [make_round([1, 2], kills=[3, 1])])])
        )

        assert _invoke(config_file, "seed", P1).exit_code == 0
        result = _invoke(config_file, "run", "--replay-dir", str(replay), "--cycles", "1")
        assert result.exit_code == 0, result.output
        assert "stored 1 match(es)" in result.output

        result = _invoke(config_file, "backfill", "--priority", "5")
        assert result.exit_code == 0, result.output
        assert "Queued 1 discovered player(s)" in result.output

        result = _invoke(config_file, "stats", "--history", "5")
        assert result.exit_code == 0, result.output
        assert "Snapshot History" in result.output

    def test_reset(self, config_file):
        _invoke(config_file, "seed", P1)
        result = _invoke(config_file, "reset")
        assert result.exit_code == 0, result.output
        assert "Reset 0 task(s)" in result.output
