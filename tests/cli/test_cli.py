"""Tests for the ``sitemapspine`` CLI."""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock, patch

import pytest
import structlog
from typer.testing import CliRunner

from sitemapspine import __version__
from sitemapspine.cli import app
from sitemapspine.core.errors import StalledRunError
from sitemapspine.core.session import create_sitemap_engine
from sitemapspine.core.settings import WorkerBackend, get_settings
from sitemapspine.orchestration.control import ControlStore
from sitemapspine.orchestration.coordinator import RunResult

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI's settings at a temporary database and output dir."""
    db_path = tmp_path / "state" / "sitemaps.db"
    monkeypatch.setenv("SITEMAP_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("SITEMAP_OUTPUT_DIR", str(tmp_path / "sitemaps"))
    monkeypatch.setenv("SITEMAP_LOG_LEVEL", "CRITICAL")
    get_settings.cache_clear()
    yield db_path
    get_settings.cache_clear()


def read_cursor(db_path):
    engine = create_sitemap_engine(f"sqlite:///{db_path}")
    try:
        return ControlStore(engine).read()
    finally:
        engine.dispose()


def fake_coordinator(result=None, error=None):
    coordinator = MagicMock()
    if error is not None:
        coordinator.run.side_effect = error
    else:
        coordinator.run.return_value = result
    return coordinator


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestInitDb:
    def test_creates_tables(self, cli_env):
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0
        assert cli_env.is_file()
        assert read_cursor(cli_env) is None

    def test_seeds_control_row(self, cli_env):
        result = runner.invoke(app, ["init-db", "--indexed-sequence", "4200"])
        assert result.exit_code == 0
        cursor = read_cursor(cli_env)
        assert cursor.last_indexed_sequence == 4200
        assert cursor.last_processed_sequence is None


class TestStatus:
    def test_json(self, cli_env):
        runner.invoke(app, ["init-db", "--indexed-sequence", "4200"])
        result = runner.invoke(app, ["status", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["last_indexed_sequence"] == 4200
        assert data["checked_entities"] == 0
        assert data["index_present"] is False

    def test_empty_control_table(self, cli_env):
        runner.invoke(app, ["init-db"])
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1


class TestRun:
    def test_empty_control_table_exits_1(self, cli_env):
        runner.invoke(app, ["init-db"])
        result = runner.invoke(app, ["run", "--inline"])
        assert result.exit_code == 1

    @patch("sitemapspine.cli.RunCoordinator.from_settings")
    def test_options_reach_settings(self, mock_from_settings, cli_env):
        mock_from_settings.return_value = fake_coordinator(RunResult())
        result = runner.invoke(app, ["run", "--inline", "--workers", "8"])
        assert result.exit_code == 0
        settings = mock_from_settings.call_args.args[0]
        assert settings.worker_backend is WorkerBackend.INLINE
        assert settings.max_workers == 8

    @patch("sitemapspine.cli.RunCoordinator.from_settings")
    def test_declined_exits_0(self, mock_from_settings, cli_env):
        mock_from_settings.return_value = fake_coordinator(RunResult(declined=True))
        result = runner.invoke(app, ["run"])
        assert result.exit_code == 0
        assert "Declined" in result.output

    @patch("sitemapspine.cli.RunCoordinator.from_settings")
    def test_stalled_exits_1(self, mock_from_settings, cli_env):
        coordinator = fake_coordinator(error=StalledRunError("ledger not empty"))
        mock_from_settings.return_value = coordinator
        result = runner.invoke(app, ["run"])
        assert result.exit_code == 1
        coordinator.http.close.assert_called_once()


class TestLoggingEnabled:
    """Commands run with logging switched on at INFO."""

    @pytest.fixture
    def info_logging(self, cli_env, monkeypatch):
        monkeypatch.setenv("SITEMAP_LOG_LEVEL", "INFO")
        monkeypatch.setenv("SITEMAP_LOG_JSON", "true")
        get_settings.cache_clear()
        yield cli_env
        structlog.reset_defaults()
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.setLevel(logging.WARNING)

    def test_init_db(self, info_logging):
        result = runner.invoke(app, ["init-db", "--indexed-sequence", "7"])
        assert result.exit_code == 0, result.output
        assert read_cursor(info_logging).last_indexed_sequence == 7

    def test_run_reports_configuration_error(self, info_logging):
        runner.invoke(app, ["init-db"])
        result = runner.invoke(app, ["run", "--inline"])
        assert result.exit_code == 1
        assert not isinstance(result.exception, AttributeError)
        assert "control" in result.output
