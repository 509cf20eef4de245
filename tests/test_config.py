"""Tests for settings defaults, environment overrides and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from quanta_stream.config import Settings


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


def test_defaults():
    s = _settings()
    assert s.symbols == ["BTC-USDT", "ETH-USDT", "SOL-USDT"]
    assert s.stream_sources == ["coinbase", "binance"]
    assert s.cooldown_minutes == 5
    assert s.heartbeat_interval == 15
    assert s.sse_retry_ms == 3000
    assert s.reconnect_max_attempts == 5
    assert s.news_keywords["Bitcoin"] == "BTC-USDT"


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("QUANTA_SYMBOLS", '["btc-usdt", " eth-usdt "]')
    monkeypatch.setenv("QUANTA_POLL_SOURCES", '["Binance"]')
    s = _settings()
    assert s.symbols == ["BTC-USDT", "ETH-USDT"]
    assert s.poll_sources == ["binance"]


def test_unknown_source_rejected():
    with pytest.raises(ValidationError):
        _settings(stream_sources=["kraken"])


def test_volatility_band_ordered():
    with pytest.raises(ValidationError):
        _settings(volatility_min=0.1, volatility_max=0.01)


@pytest.mark.parametrize("field,value", [
    ("poll_interval", 0),
    ("heartbeat_interval", -1),
    ("sentiment_threshold", -0.5),
    ("reconnect_max_attempts", -1),
])
def test_range_checks(field, value):
    with pytest.raises(ValidationError):
        _settings(**{field: value})
