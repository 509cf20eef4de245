"""Tests for stream reconnection, REST polling and the connection manager."""

from __future__ import annotations

import asyncio
import json
import random
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import FakeSource
from quanta_stream.common.cache import MemoryCache
from quanta_stream.config import ConfigurationError
from quanta_stream.market.connections import (
    BackoffPolicy,
    ConnectionManager,
    ConnectionState,
    RestPoller,
    StreamSource,
    binance_stream_spec,
    build_sources,
    coinbase_stream_spec,
)

BTC_TICK = json.dumps({"stream": "btcusdt@ticker", "data": {"s": "BTCUSDT", "c": "42000", "E": 1705320000000}})
ETH_TICK = json.dumps({"stream": "ethusdt@ticker", "data": {"s": "ETHUSDT", "c": "2500", "E": 1705320001000}})


class FakeWebSocket:
    def __init__(self, messages: list[str]) -> None:
        self.messages = messages
        self.sent: list[str] = []

    async def __aenter__(self) -> FakeWebSocket:
        return self

    async def __aexit__(self, *args: object) -> None:
        return None

    async def send(self, message: str) -> None:
        self.sent.append(message)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self.messages:
            yield message


class ScriptedConnector:
    """Returns the scripted outcome for each successive connect call."""

    def __init__(self, outcomes: list) -> None:
        self.outcomes = outcomes
        self.urls: list[str] = []

    def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _policy(max_attempts: int = 3) -> BackoffPolicy:
    return BackoffPolicy(base_delay=1.0, max_attempts=max_attempts, jitter=0.0, max_delay=60.0)


class TestBackoffPolicy:
    def test_exponential_without_jitter(self):
        policy = _policy()
        assert [policy.delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = BackoffPolicy(base_delay=1.0, jitter=0.0, max_delay=10.0)
        assert policy.delay(10) == 10.0

    def test_jitter_bounds(self):
        policy = BackoffPolicy(base_delay=2.0, jitter=1.0, rng=random.Random(7))
        for _ in range(20):
            assert 2.0 <= policy.delay(0) <= 3.0


class TestStreamSource:
    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self, clock):
        connector = ScriptedConnector([])
        source = StreamSource(
            binance_stream_spec("wss://example", ["BTC-USDT"]),
            sink=lambda q: None,
            policy=_policy(max_attempts=3),
            clock=clock,
            connector=connector,
        )
        await source.run()

        assert source.state is ConnectionState.FAILED
        assert len(connector.urls) == 4
        assert clock.sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_delivers_quotes_and_subscribes(self, clock):
        ws = FakeWebSocket([
            json.dumps({"type": "subscriptions"}),
            json.dumps({"type": "ticker", "product_id": "BTC-USD", "price": "50000"}),
            "not json",
        ])
        received = []
        source = StreamSource(
            coinbase_stream_spec("wss://example", ["BTC-USDT", "ETH-USDT"]),
            sink=received.append,
            policy=_policy(max_attempts=0),
            clock=clock,
            connector=ScriptedConnector([ws]),
        )
        await source.run()

        assert json.loads(ws.sent[0]) == {
            "type": "subscribe",
            "product_ids": ["BTC-USD", "ETH-USD"],
            "channels": ["ticker"],
        }
        assert [q.symbol for q in received] == ["BTC-USDT"]
        assert source.received == 1
        assert source.dropped == 2

    @pytest.mark.asyncio
    async def test_attempts_reset_after_successful_connect(self, clock):
        connector = ScriptedConnector([OSError("a"), OSError("b"), FakeWebSocket([])])
        source = StreamSource(
            binance_stream_spec("wss://example", ["BTC-USDT"]),
            sink=lambda q: None,
            policy=_policy(max_attempts=2),
            clock=clock,
            connector=connector,
        )
        await source.run()

        assert source.state is ConnectionState.FAILED
        assert len(connector.urls) == 5
        assert clock.sleeps == [1.0, 2.0, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_stop_from_sink(self, clock):
        source = None

        def sink(quote):
            source.stop()

        source = StreamSource(
            binance_stream_spec("wss://example", ["BTC-USDT"]),
            sink=sink,
            policy=_policy(),
            clock=clock,
            connector=ScriptedConnector([FakeWebSocket([BTC_TICK, ETH_TICK])]),
        )
        await source.run()

        assert source.state is ConnectionState.STOPPED
        assert source.received == 1

    @pytest.mark.asyncio
    async def test_sink_errors_do_not_break_stream(self, clock):
        def sink(quote):
            raise RuntimeError("boom")

        source = StreamSource(
            binance_stream_spec("wss://example", ["BTC-USDT"]),
            sink=sink,
            policy=_policy(max_attempts=0),
            clock=clock,
            connector=ScriptedConnector([FakeWebSocket([BTC_TICK, ETH_TICK])]),
        )
        await source.run()
        assert source.received == 2


class TestStreamSpecs:
    def test_binance_combined_stream_url(self):
        spec = binance_stream_spec("wss://stream.binance.com:9443/", ["BTC-USDT", "SOL-USDT"])
        assert spec.url == "wss://stream.binance.com:9443/stream?streams=btcusdt@ticker/solusdt@ticker"
        assert spec.subscribe_message is None


def _binance_rest(symbol: str, price: str = "100") -> dict:
    return {"symbol": symbol, "lastPrice": price, "bidQty": "1", "askQty": "1"}


class TestRestPoller:
    def _poller(self, clock, client, received, cache=None):
        return RestPoller(
            "binance",
            ["BTC-USDT", "ETH-USDT"],
            received.append,
            client=client,
            cache=cache or MemoryCache(clock),
            clock=clock,
            interval=2.0,
            cache_ttl=60,
        )

    @pytest.mark.asyncio
    async def test_polls_every_symbol(self, clock):
        client = AsyncMock()
        client.get_json.side_effect = lambda path, params=None: _binance_rest(params["symbol"])
        received = []
        await self._poller(clock, client, received).poll_once()

        assert sorted(q.symbol for q in received) == ["BTC-USDT", "ETH-USDT"]
        assert client.get_json.await_count == 2
        client.get_json.assert_any_await("/api/v3/ticker/24hr", params={"symbol": "BTCUSDT"})

    @pytest.mark.asyncio
    async def test_cached_within_interval(self, clock):
        client = AsyncMock()
        client.get_json.side_effect = lambda path, params=None: _binance_rest(params["symbol"])
        received = []
        poller = self._poller(clock, client, received)

        await poller.poll_once()
        clock.advance(1.0)
        await poller.poll_once()
        assert client.get_json.await_count == 2
        assert len(received) == 4

        clock.advance(1.5)
        await poller.poll_once()
        assert client.get_json.await_count == 4

    @pytest.mark.asyncio
    async def test_cache_failure_is_a_miss(self, clock):
        cache = AsyncMock()
        cache.get.side_effect = RuntimeError("cache down")
        cache.set.side_effect = RuntimeError("cache down")
        client = AsyncMock()
        client.get_json.side_effect = lambda path, params=None: _binance_rest(params["symbol"])
        received = []
        poller = self._poller(clock, client, received, cache=cache)

        await poller.poll_once()
        await poller.poll_once()
        assert client.get_json.await_count == 4
        assert len(received) == 4

    @pytest.mark.asyncio
    async def test_instrument_failure_is_isolated(self, clock):
        def fetch(path, params=None):
            if params["symbol"] == "BTCUSDT":
                raise httpx.ConnectError("unreachable")
            return _binance_rest(params["symbol"])

        client = AsyncMock()
        client.get_json.side_effect = fetch
        received = []
        await self._poller(clock, client, received).poll_once()
        assert [q.symbol for q in received] == ["ETH-USDT"]

    @pytest.mark.asyncio
    async def test_run_closes_client(self, clock):
        client = AsyncMock()
        client.get_json.return_value = None
        poller = self._poller(clock, client, [])

        async def stop_after_first_sleep(seconds):
            poller.stop()

        clock.sleep = stop_after_first_sleep
        await poller.run()
        client.close.assert_awaited_once()
        assert poller.state is ConnectionState.STOPPED

    def test_unknown_source(self, clock):
        with pytest.raises(ConfigurationError):
            RestPoller("kraken", ["BTC-USDT"], lambda q: None, client=AsyncMock(), clock=clock)


class TestConnectionManager:
    def test_requires_a_source(self):
        with pytest.raises(ConfigurationError):
            ConnectionManager([])

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        a, b = FakeSource("a"), FakeSource("b")
        manager = ConnectionManager([a, b])
        manager.start()
        await asyncio.sleep(0)
        assert manager.states() == {"a": "connected", "b": "connected"}

        await manager.stop()
        assert manager.states() == {"a": "stopped", "b": "stopped"}
        assert manager.failed() == []

    @pytest.mark.asyncio
    async def test_failed_source_does_not_affect_others(self, clock):
        healthy = FakeSource("healthy")
        failing = StreamSource(
            binance_stream_spec("wss://example", ["BTC-USDT"]),
            sink=lambda q: None,
            policy=_policy(max_attempts=1),
            clock=clock,
            connector=ScriptedConnector([]),
        )
        manager = ConnectionManager([failing, healthy])
        manager.start()
        for _ in range(10):
            await asyncio.sleep(0)

        assert manager.failed() == ["binance"]
        assert healthy.state is ConnectionState.CONNECTED
        await manager.stop()


class TestBuildSources:
    def test_streams_and_pollers(self, settings):
        settings.stream_sources = ["coinbase"]
        settings.poll_sources = ["binance"]
        sources = build_sources(settings, lambda q: None)
        assert [s.name for s in sources] == ["coinbase", "binance-poll"]
