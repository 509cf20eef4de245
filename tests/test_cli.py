"""Tests for CLI commands with mocked dependencies."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from conftest import T0
from quanta_stream.cli import app
from quanta_stream.news.ingestor import IngestReport
from quanta_stream.signals.models import Direction, Signal

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_db, monkeypatch):
    monkeypatch.setenv("QUANTA_DB_PATH", str(tmp_db))
    monkeypatch.setenv("QUANTA_NEWS_ENABLED", "false")
    monkeypatch.chdir(tmp_db.parent)


@pytest.fixture
def sample_signal():
    return Signal(T0, "BTC-USDT", Direction.BUY, 0.78, {
        "sentiment_z": 1.5, "r_5s": 0.002, "rv_30s": 0.001, "ofi_proxy": 0.5,
        "trigger": "positive_sentiment_momentum",
    })


class TestSignalsCommand:
    def test_json_output(self, sample_signal):
        with patch(
            "quanta_stream.signals.tracker.SignalTracker.load_signals",
            new=AsyncMock(return_value=[sample_signal]),
        ):
            result = runner.invoke(app, ["signals", "--output", "json"])

        assert result.exit_code == 0
        assert "positive_sentiment_momentum" in result.output

    def test_csv_output(self, sample_signal):
        with patch(
            "quanta_stream.signals.tracker.SignalTracker.load_signals",
            new=AsyncMock(return_value=[sample_signal]),
        ):
            result = runner.invoke(app, ["signals", "-o", "csv"])

        assert result.exit_code == 0
        assert "ts,symbol,direction" in result.output

    def test_empty_table(self):
        result = runner.invoke(app, ["signals"])
        assert result.exit_code == 0
        assert "No signals recorded yet" in result.output


class TestStatusCommand:
    def test_shows_configuration(self):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "BTC-USDT" in result.output
        assert "Signals logged" in result.output
        assert "Articles stored" in result.output


class TestIngestNewsCommand:
    def test_prints_summary(self):
        with patch(
            "quanta_stream.news.ingestor.NewsIngestor.run_once",
            new=AsyncMock(return_value=IngestReport(fetched=3, stored=2, skipped=1, failed=1)),
        ):
            result = runner.invoke(app, ["ingest-news"])

        assert result.exit_code == 0
        assert "Stored:" in result.output
        assert "Failed:" in result.output


class TestServeCommand:
    def test_starts_uvicorn(self):
        with patch("uvicorn.Server.serve", new=AsyncMock()) as serve:
            result = runner.invoke(app, ["serve", "--port", "9999", "--no-news"])

        assert result.exit_code == 0
        assert "9999" in result.output
        serve.assert_awaited_once()


def test_no_args_shows_help():
    result = runner.invoke(app, [])
    assert "serve" in result.output
