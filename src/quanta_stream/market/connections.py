"""Upstream connection management: push streams with backoff, and REST polling.

Every source runs as its own asyncio task. A source's failures only move that
source through its state machine; the others keep delivering.

    DISCONNECTED -> CONNECTING -> CONNECTED -> (failure) BACKOFF -> CONNECTING
                                               (budget exhausted) FAILED
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

import websockets
from websockets.exceptions import WebSocketException

from quanta_stream.common.cache import Cache, MemoryCache
from quanta_stream.common.http import HttpClient
from quanta_stream.common.types import Clock, SystemClock
from quanta_stream.config import ConfigurationError, Settings
from quanta_stream.market.adapters import adapt, native_symbol
from quanta_stream.market.models import CanonicalQuote

logger = logging.getLogger(__name__)

QuoteSink = Callable[[CanonicalQuote], None]
Connector = Callable[[str], Any]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class BackoffPolicy:
    """Exponential reconnect delay with uniform jitter and a retry budget."""

    base_delay: float = 1.0
    max_attempts: int = 5
    jitter: float = 1.0
    max_delay: float = 60.0
    rng: random.Random = field(default_factory=random.Random)

    def delay(self, attempt: int) -> float:
        """Delay before reconnect number ``attempt + 1`` (attempt is 0-based)."""
        backoff = min(self.max_delay, self.base_delay * (2 ** attempt))
        return backoff + self.rng.uniform(0.0, self.jitter)

    @classmethod
    def from_settings(cls, settings: Settings) -> BackoffPolicy:
        return cls(
            base_delay=settings.reconnect_base_delay,
            max_attempts=settings.reconnect_max_attempts,
            jitter=settings.reconnect_jitter,
            max_delay=settings.reconnect_max_delay,
        )


class Source(Protocol):
    name: str
    state: ConnectionState

    async def run(self) -> None:
        ...

    def stop(self) -> None:
        ...


@dataclass(frozen=True)
class StreamSpec:
    """Where to connect and what (if anything) to send once connected."""

    source: str
    url: str
    subscribe_message: dict | None = None


def coinbase_stream_spec(url: str, symbols: list[str]) -> StreamSpec:
    products = [native_symbol("coinbase", s) for s in symbols]
    return StreamSpec(
        source="coinbase",
        url=url,
        subscribe_message={"type": "subscribe", "product_ids": products, "channels": ["ticker"]},
    )


def binance_stream_spec(url: str, symbols: list[str]) -> StreamSpec:
    # Binance subscribes through the combined-stream URL; nothing is sent.
    streams = "/".join(f"{native_symbol('binance', s).lower()}@ticker" for s in symbols)
    return StreamSpec(source="binance", url=f"{url.rstrip('/')}/stream?streams={streams}")


class StreamSource:
    """One push connection (WebSocket) to an upstream exchange."""

    def __init__(
        self,
        spec: StreamSpec,
        sink: QuoteSink,
        policy: BackoffPolicy | None = None,
        clock: Clock | None = None,
        connector: Connector | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.spec = spec
        self.name = spec.source
        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self.received = 0
        self.dropped = 0
        self._sink = sink
        self._policy = policy or BackoffPolicy()
        self._clock = clock or SystemClock()
        self._connector = connector or functools.partial(
            websockets.connect,
            open_timeout=connect_timeout,
            ping_interval=20,
            ping_timeout=20,
        )
        self._stopped = False

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.debug("%s: %s -> %s", self.name, self.state.value, state.value)
            self.state = state

    async def run(self) -> None:
        """Connect, consume, and reconnect with backoff until stopped or failed."""
        while not self._stopped:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with self._connector(self.spec.url) as ws:
                    self._set_state(ConnectionState.CONNECTED)
                    self.attempt = 0
                    logger.info("%s: connected to %s", self.name, self.spec.url)
                    if self.spec.subscribe_message is not None:
                        await ws.send(json.dumps(self.spec.subscribe_message))
                    async for raw in ws:
                        if self._stopped:
                            break
                        self._on_message(raw)
                if not self._stopped:
                    logger.warning("%s: stream closed by peer", self.name)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("%s: connection error: %s", self.name, exc)

            if self._stopped:
                break

            self.attempt += 1
            if self.attempt > self._policy.max_attempts:
                self._set_state(ConnectionState.FAILED)
                logger.error(
                    "%s: giving up after %d reconnect attempts",
                    self.name, self._policy.max_attempts,
                )
                return

            delay = self._policy.delay(self.attempt - 1)
            self._set_state(ConnectionState.BACKOFF)
            logger.info(
                "%s: reconnect %d/%d in %.1fs",
                self.name, self.attempt, self._policy.max_attempts, delay,
            )
            await self._clock.sleep(delay)

        self._set_state(ConnectionState.STOPPED)

    def _on_message(self, raw: str | bytes) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            self.dropped += 1
            logger.debug("%s: non-JSON frame dropped", self.name)
            return

        quote = adapt(self.name, payload, self._clock.now())
        if quote is None:
            self.dropped += 1
            return
        self.received += 1
        try:
            self._sink(quote)
        except Exception:
            logger.exception("%s: quote handler failed for %s", self.name, quote.symbol)

    def stop(self) -> None:
        self._stopped = True
        self._set_state(ConnectionState.STOPPED)


class RestPoller:
    """Fixed-interval REST polling for sources without a usable push feed.

    A short-TTL cache keyed ``ticker:{source}:{native}`` lets a fetch that
    falls within the current poll interval reuse the last quote instead of
    calling upstream again.
    """

    def __init__(
        self,
        source: str,
        symbols: list[str],
        sink: QuoteSink,
        client: HttpClient,
        cache: Cache | None = None,
        clock: Clock | None = None,
        interval: float = 2.0,
        cache_ttl: float = 60.0,
    ) -> None:
        if source not in _REST_REQUESTS:
            raise ConfigurationError(f"no REST ticker endpoint for source {source!r}")
        self.name = f"{source}-poll"
        self.source = source
        self.state = ConnectionState.DISCONNECTED
        self.symbols = list(symbols)
        self._sink = sink
        self._client = client
        self._cache = cache if cache is not None else MemoryCache(clock)
        self._clock = clock or SystemClock()
        self._interval = interval
        self._cache_ttl = cache_ttl
        self._last_fetch: dict[str, float] = {}
        self._stopped = False

    async def run(self) -> None:
        self.state = ConnectionState.CONNECTED
        try:
            while not self._stopped:
                await self.poll_once()
                await self._clock.sleep(self._interval)
        finally:
            await self._client.close()
            self.state = ConnectionState.STOPPED

    async def poll_once(self) -> None:
        """Fetch every tracked instrument concurrently; failures are per instrument."""
        natives = [native_symbol(self.source, s) for s in self.symbols]
        results = await asyncio.gather(
            *(self._fetch_symbol(n) for n in natives), return_exceptions=True,
        )
        for native, result in zip(natives, results):
            if isinstance(result, Exception):
                logger.warning("%s: fetch failed for %s: %s", self.name, native, result)

    async def _fetch_symbol(self, native: str) -> None:
        key = f"ticker:{self.source}:{native}"
        now = self._clock.now().timestamp()

        if now - self._last_fetch.get(key, 0.0) < self._interval:
            cached = await self._cache_get(key)
            if cached is not None:
                self._deliver(cached)
                return

        path, params, inject = _REST_REQUESTS[self.source](native)
        payload = await self._client.get_json(path, params=params)
        if not isinstance(payload, dict):
            logger.debug("%s: unexpected payload for %s: %r", self.name, native, payload)
            return
        quote = adapt(self.source, {**payload, **inject}, self._clock.now())
        if quote is None:
            return

        self._deliver(quote)
        self._last_fetch[key] = now
        await self._cache_set(key, quote)

    def _deliver(self, quote: CanonicalQuote) -> None:
        if self._stopped:
            return
        try:
            self._sink(quote)
        except Exception:
            logger.exception("%s: quote handler failed for %s", self.name, quote.symbol)

    async def _cache_get(self, key: str) -> CanonicalQuote | None:
        try:
            raw = await self._cache.get(key)
            return CanonicalQuote.from_dict(json.loads(raw)) if raw else None
        except Exception as exc:
            logger.warning("%s: cache read failed for %s: %s", self.name, key, exc)
            return None

    async def _cache_set(self, key: str, quote: CanonicalQuote) -> None:
        try:
            await self._cache.set(key, json.dumps(quote.to_dict()), self._cache_ttl)
        except Exception as exc:
            logger.warning("%s: cache write failed for %s: %s", self.name, key, exc)

    def stop(self) -> None:
        self._stopped = True
        self.state = ConnectionState.STOPPED


def _coinbase_request(native: str) -> tuple[str, dict | None, dict]:
    return f"/products/{native}/ticker", None, {"type": "ticker", "product_id": native}


def _binance_request(native: str) -> tuple[str, dict | None, dict]:
    return "/api/v3/ticker/24hr", {"symbol": native}, {"s": native}


_REST_REQUESTS: dict[str, Callable[[str], tuple[str, dict | None, dict]]] = {
    "coinbase": _coinbase_request,
    "binance": _binance_request,
}


class ConnectionManager:
    """Owns every upstream source task and their lifecycle."""

    def __init__(self, sources: list[Source]) -> None:
        if not sources:
            raise ConfigurationError("no market data sources configured")
        self.sources = list(sources)
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        if self._tasks:
            return
        for source in self.sources:
            self._tasks.append(asyncio.create_task(source.run(), name=f"source:{source.name}"))
        logger.info("Started %d source(s): %s", len(self.sources), ", ".join(self.names()))

    async def stop(self) -> None:
        """Stop every source and wait for its task; no quote is delivered afterwards."""
        for source in self.sources:
            source.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def names(self) -> list[str]:
        return [s.name for s in self.sources]

    def states(self) -> dict[str, str]:
        return {s.name: s.state.value for s in self.sources}

    def failed(self) -> list[str]:
        return [s.name for s in self.sources if s.state is ConnectionState.FAILED]


def build_sources(
    settings: Settings,
    sink: QuoteSink,
    clock: Clock | None = None,
    quote_cache: Cache | None = None,
) -> list[Source]:
    """Create stream sources and pollers for every configured exchange."""
    sources: list[Source] = []
    stream_specs = {
        "coinbase": lambda: coinbase_stream_spec(settings.coinbase_ws_url, settings.symbols),
        "binance": lambda: binance_stream_spec(settings.binance_ws_url, settings.symbols),
    }
    rest_urls = {
        "coinbase": settings.coinbase_rest_url,
        "binance": settings.binance_rest_url,
    }

    for name in settings.stream_sources:
        sources.append(
            StreamSource(
                stream_specs[name](),
                sink,
                policy=BackoffPolicy.from_settings(settings),
                clock=clock,
                connect_timeout=settings.connect_timeout,
            )
        )

    cache = quote_cache if quote_cache is not None else MemoryCache(clock)
    for name in settings.poll_sources:
        sources.append(
            RestPoller(
                name,
                settings.symbols,
                sink,
                client=HttpClient(base_url=rest_urls[name], timeout=settings.http_timeout),
                cache=cache,
                clock=clock,
                interval=settings.poll_interval,
                cache_ttl=settings.quote_cache_ttl,
            )
        )
    return sources
