"""Fan-out of ticks, signals and heartbeats to SSE subscribers.

Publishing never awaits: each subscriber owns a bounded queue, and a full
queue drops its oldest frame. A dead subscriber is noticed by its own stream
generator (cancelled by the server when the peer goes away) and cleaned up
there, so ingestion never waits on any client.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import AsyncIterator, Iterable

from quanta_stream.common.types import Clock, SystemClock
from quanta_stream.market.models import CanonicalQuote
from quanta_stream.signals.models import Signal
from quanta_stream.stream.sse import ping_event, retry_directive, signal_event, tick_event

logger = logging.getLogger(__name__)

_CLOSED = object()
_ids = itertools.count(1)


class Subscription:
    """One subscriber's symbol filter and pending frames."""

    def __init__(self, symbols: Iterable[str], maxsize: int = 256) -> None:
        self.id = next(_ids)
        self.symbols = frozenset(symbols)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def wants(self, symbol: str) -> bool:
        return symbol in self.symbols

    def offer(self, frame: object) -> None:
        """Enqueue without blocking; evict the oldest frame when full."""
        if self.closed:
            return
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            self.queue.put_nowait(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # make room so the sentinel always lands
        while self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSED)


class StreamBroadcaster:
    def __init__(
        self,
        heartbeat_interval: float = 15.0,
        retry_ms: int = 3000,
        queue_size: int = 256,
        clock: Clock | None = None,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.retry_ms = retry_ms
        self.queue_size = queue_size
        self._clock = clock or SystemClock()
        self._subscriptions: dict[int, Subscription] = {}
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, symbols: Iterable[str]) -> Subscription:
        sub = Subscription(symbols, maxsize=self.queue_size)
        if self._closed:
            sub.close()
        else:
            self._subscriptions[sub.id] = sub
            logger.info("Subscriber %d joined for %s", sub.id, ",".join(sorted(sub.symbols)))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if self._subscriptions.pop(sub.id, None) is not None:
            sub.closed = True
            logger.info("Subscriber %d released (%d frame(s) dropped)", sub.id, sub.dropped)

    def _fan_out(self, symbol: str, frame: str) -> int:
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if sub.wants(symbol):
                sub.offer(frame)
                delivered += 1
        return delivered

    def publish_quote(self, quote: CanonicalQuote) -> int:
        """Queue a tick for every subscriber of the quote's symbol. Returns the fan-out count."""
        if self._closed or not self._subscriptions:
            return 0
        return self._fan_out(quote.symbol, tick_event(quote))

    def publish_signal(self, signal: Signal) -> int:
        if self._closed or not self._subscriptions:
            return 0
        return self._fan_out(signal.symbol, signal_event(signal))

    async def stream(self, symbols: Iterable[str]) -> AsyncIterator[str]:
        """Frames for one subscriber: retry directive, then ticks/signals and pings.

        Pings follow a fixed cadence regardless of traffic. Exiting the
        generator (peer gone, cancellation, aclose, broadcaster closed)
        releases the subscription and with it the heartbeat.
        """
        sub = self.subscribe(symbols)
        loop = asyncio.get_running_loop()
        try:
            yield retry_directive(self.retry_ms)
            next_ping = loop.time() + self.heartbeat_interval
            while True:
                timeout = next_ping - loop.time()
                if timeout <= 0:
                    yield ping_event(self._clock.now())
                    next_ping += self.heartbeat_interval
                    continue
                try:
                    frame = await asyncio.wait_for(sub.queue.get(), timeout)
                except asyncio.TimeoutError:
                    continue
                if frame is _CLOSED:
                    return
                yield frame
        finally:
            self.unsubscribe(sub)

    def close(self) -> None:
        """End every open stream; later subscribers get an already-closed stream."""
        self._closed = True
        for sub in list(self._subscriptions.values()):
            sub.close()
