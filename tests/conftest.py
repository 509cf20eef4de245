"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from quanta_stream.config import Settings
from quanta_stream.features.extractor import FeatureSet
from quanta_stream.market.models import CanonicalQuote

T0 = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manual clock: sleep() records the delay and advances time instantly."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class FakeSource:
    """Source that idles until stopped."""

    def __init__(self, name: str = "fake") -> None:
        from quanta_stream.market.connections import ConnectionState

        self.name = name
        self.state = ConnectionState.DISCONNECTED
        self._states = ConnectionState
        self._stop = asyncio.Event()

    async def run(self) -> None:
        self.state = self._states.CONNECTED
        await self._stop.wait()

    def stop(self) -> None:
        self.state = self._states.STOPPED
        self._stop.set()


def make_quote(
    price: float | None,
    offset_ms: int = 0,
    symbol: str = "BTC-USDT",
    exchange: str = "binance",
    bid_size: float | None = None,
    ask_size: float | None = None,
) -> CanonicalQuote:
    return CanonicalQuote(
        timestamp=T0 + timedelta(milliseconds=offset_ms),
        exchange=exchange,
        symbol=symbol,
        last=price,
        bid=None if price is None else price - 0.5,
        ask=None if price is None else price + 0.5,
        bid_size=bid_size,
        ask_size=ask_size,
    )


def make_features(
    r_1s: float = 0.002,
    r_5s: float = 0.002,
    rv_30s: float = 0.001,
    ofi_proxy: float = 0.5,
    sentiment_z: float = 1.5,
) -> FeatureSet:
    return FeatureSet(r_1s=r_1s, r_5s=r_5s, rv_30s=rv_30s, ofi_proxy=ofi_proxy, sentiment_z=sentiment_z)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tmp_db(tmp_path) -> Path:
    return tmp_path / "quanta.db"


@pytest.fixture
def settings(tmp_db) -> Settings:
    """Settings isolated from the environment: no sources, no news, temp database."""
    return Settings(
        _env_file=None,
        db_path=tmp_db,
        stream_sources=[],
        poll_sources=[],
        news_enabled=False,
        telegram_enabled=False,
    )
