"""Top-level pipeline orchestrator.

Wires together: sources → canonical quotes → features → signals → SSE fan-out,
with signal persistence, notifications and news ingestion running beside it.
Everything runs on one asyncio loop; the per-quote path is synchronous so
each quote's state updates apply atomically.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta

from quanta_stream.common.cache import SqliteCache
from quanta_stream.common.types import Clock, SystemClock
from quanta_stream.config import Settings, get_settings
from quanta_stream.features.extractor import FeatureExtractor, FeatureSet
from quanta_stream.market.connections import ConnectionManager, Source, build_sources
from quanta_stream.market.models import CanonicalQuote
from quanta_stream.news.ingestor import NewsIngestor
from quanta_stream.news.store import ArticleStore
from quanta_stream.notifications.telegram import TelegramNotifier
from quanta_stream.signals.engine import SignalEngine, SignalEngineConfig
from quanta_stream.signals.models import AlertPolicy, Signal
from quanta_stream.signals.tracker import SignalTracker
from quanta_stream.stream.broadcaster import StreamBroadcaster

logger = logging.getLogger(__name__)


@dataclass
class AlertFired:
    policy_id: int
    policy: AlertPolicy
    features: FeatureSet
    at: datetime


class IngestionContext:
    """Per-process quote state: feature history, cooldowns, alert policies, subscribers."""

    def __init__(
        self,
        extractor: FeatureExtractor,
        engine: SignalEngine,
        broadcaster: StreamBroadcaster,
        outbox_size: int = 1024,
    ) -> None:
        self.extractor = extractor
        self.engine = engine
        self.broadcaster = broadcaster
        self.policies: dict[int, AlertPolicy] = {}
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self.quotes_seen = 0
        self.signals_emitted = 0
        self._alert_fired_at: dict[int, datetime] = {}

    def register_policy(self, policy_id: int, policy: AlertPolicy) -> None:
        self.policies[policy_id] = policy

    def remove_policy(self, policy_id: int) -> bool:
        self._alert_fired_at.pop(policy_id, None)
        return self.policies.pop(policy_id, None) is not None

    def handle_quote(self, quote: CanonicalQuote) -> Signal | None:
        """Process one canonical quote end to end. Never awaits."""
        self.quotes_seen += 1
        self.broadcaster.publish_quote(quote)

        features = self.extractor.update(quote)
        if features is None:
            return None

        signal = self.engine.evaluate(quote.symbol, features, quote.timestamp)
        if signal is not None:
            self.signals_emitted += 1
            self.broadcaster.publish_signal(signal)
            self._enqueue(signal)

        self._check_alerts(quote, features)
        return signal

    def _check_alerts(self, quote: CanonicalQuote, features: FeatureSet) -> None:
        for policy_id, policy in self.policies.items():
            if policy.symbol != quote.symbol:
                continue
            if not self.engine.evaluate_alert(policy, features):
                continue
            last = self._alert_fired_at.get(policy_id)
            if last is not None and quote.timestamp - last < timedelta(minutes=policy.cooldown_minutes):
                continue
            self._alert_fired_at[policy_id] = quote.timestamp
            logger.info("Alert policy %d fired for %s", policy_id, quote.symbol)
            self._enqueue(AlertFired(policy_id, policy, features, quote.timestamp))

    def _enqueue(self, item: Signal | AlertFired) -> None:
        try:
            self.outbox.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Outbox full, dropping %s", type(item).__name__)


class Pipeline:
    """Lifecycle owner for sources, the outbox drain task and the news loop."""

    def __init__(
        self,
        settings: Settings,
        context: IngestionContext,
        manager: ConnectionManager,
        tracker: SignalTracker,
        notifier: TelegramNotifier | None = None,
        ingestor: NewsIngestor | None = None,
    ) -> None:
        self.settings = settings
        self.context = context
        self.manager = manager
        self.tracker = tracker
        self.notifier = notifier
        self.ingestor = ingestor
        self._drain_task: asyncio.Task | None = None
        self._news_task: asyncio.Task | None = None
        self.running = False

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        clock: Clock | None = None,
        sources: list[Source] | None = None,
    ) -> Pipeline:
        """Assemble a pipeline from settings. ``sources`` overrides the configured ones."""
        settings = settings or get_settings()
        clock = clock or SystemClock()

        context = IngestionContext(
            extractor=FeatureExtractor(),
            engine=SignalEngine(SignalEngineConfig.from_settings(settings)),
            broadcaster=StreamBroadcaster(
                heartbeat_interval=settings.heartbeat_interval,
                retry_ms=settings.sse_retry_ms,
                queue_size=settings.subscriber_queue_size,
                clock=clock,
            ),
        )
        if sources is None:
            sources = build_sources(settings, context.handle_quote, clock=clock)
        manager = ConnectionManager(sources)

        notifier = None
        if settings.telegram_enabled:
            notifier = TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id)

        ingestor = None
        if settings.news_enabled:
            ingestor = NewsIngestor.from_settings(
                settings,
                sentiment_sink=context.extractor.add_sentiment,
                store=ArticleStore(settings.db_path),
                cache=SqliteCache(settings.db_path, clock),
                clock=clock,
            )

        return cls(
            settings,
            context,
            manager,
            SignalTracker(settings.db_path),
            notifier=notifier,
            ingestor=ingestor,
        )

    @property
    def broadcaster(self) -> StreamBroadcaster:
        return self.context.broadcaster

    async def start(self) -> None:
        if self.running:
            return
        try:
            for policy_id, policy in await self.tracker.active_policies():
                self.context.register_policy(policy_id, policy)
        except (sqlite3.Error, OSError, ValueError) as exc:
            logger.warning("Could not load alert policies: %s", exc)

        self.manager.start()
        self._drain_task = asyncio.create_task(self._drain(), name="outbox")
        if self.ingestor is not None:
            self._news_task = asyncio.create_task(self.ingestor.run_forever(), name="news")
        self.running = True
        logger.info(
            "Pipeline started: %d source(s), %d alert policy(ies), news %s",
            len(self.manager.sources), len(self.context.policies),
            "on" if self.ingestor else "off",
        )

    async def stop(self) -> None:
        """Stop sources first so no quote is handled afterwards, then the side tasks.

        Items still queued in the outbox are dispatched before the drain task
        is cancelled, so every emitted signal is persisted.
        """
        if not self.running:
            return
        self.running = False
        await self.manager.stop()

        if self.ingestor is not None:
            self.ingestor.stop()
        if self._news_task is not None:
            self._news_task.cancel()
            await asyncio.gather(self._news_task, return_exceptions=True)
            self._news_task = None

        await self._flush()
        if self._drain_task is not None:
            self._drain_task.cancel()
            await asyncio.gather(self._drain_task, return_exceptions=True)
            self._drain_task = None

        self.broadcaster.close()
        if self.notifier is not None:
            await self.notifier.close()
        logger.info("Pipeline stopped after %d quote(s)", self.context.quotes_seen)

    async def _flush(self) -> None:
        outbox = self.context.outbox
        flushed = 0
        while not outbox.empty():
            item = outbox.get_nowait()
            try:
                await self.dispatch(item)
            finally:
                outbox.task_done()
            flushed += 1
        if flushed:
            logger.info("Flushed %d queued item(s) on shutdown", flushed)
        # the drain task may still be dispatching the item it took last
        try:
            await asyncio.wait_for(outbox.join(), 2 * self.settings.io_timeout)
        except asyncio.TimeoutError:
            logger.warning("Outbox still busy at shutdown, %d item(s) pending", outbox.qsize())

    async def register_policy(self, policy: AlertPolicy) -> int:
        """Persist a policy and start evaluating it on the next quote."""
        policy_id = await self.tracker.save_policy(policy)
        self.context.register_policy(policy_id, policy)
        return policy_id

    async def _drain(self) -> None:
        while True:
            item = await self.context.outbox.get()
            try:
                await self.dispatch(item)
            finally:
                self.context.outbox.task_done()

    async def dispatch(self, item: Signal | AlertFired) -> None:
        """Persist and notify one outbox item; failures are logged, never raised."""
        timeout = self.settings.io_timeout
        if isinstance(item, Signal):
            try:
                await asyncio.wait_for(self.tracker.log_signal(item), timeout)
            except asyncio.TimeoutError:
                logger.warning("Timed out persisting %s signal for %s", item.direction.value, item.symbol)
            except (sqlite3.Error, OSError) as exc:
                logger.warning("Failed to persist signal for %s: %s", item.symbol, exc)
            if self.notifier is not None:
                await self._notify(self.notifier.notify_signal(item), item.symbol)
        elif self.notifier is not None:
            await self._notify(self.notifier.notify_alert(item.policy, item.features), item.policy.symbol)

    async def _notify(self, coro, symbol: str) -> None:
        try:
            await asyncio.wait_for(coro, self.settings.io_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out sending notification for %s", symbol)

    def status(self) -> dict:
        return {
            "running": self.running,
            "sources": self.manager.states(),
            "failed_sources": self.manager.failed(),
            "subscribers": self.broadcaster.subscriber_count,
            "symbols": self.context.extractor.symbols(),
            "quotes_seen": self.context.quotes_seen,
            "signals_emitted": self.context.signals_emitted,
            "alert_policies": len(self.context.policies),
            "outbox_pending": self.context.outbox.qsize(),
        }
