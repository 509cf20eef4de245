"""Scheduled news ingestion: fetch, dedupe by content fingerprint, score, feed sentiment history."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from quanta_stream.common.cache import Cache
from quanta_stream.common.types import Clock, SystemClock
from quanta_stream.config import Settings
from quanta_stream.news.gdelt import GdeltClient
from quanta_stream.news.models import SentimentRecord, article_from_gdelt
from quanta_stream.news.sentiment import KeywordSentimentScorer, SentimentScorer
from quanta_stream.news.store import ArticleStore, DuplicateArticleError

logger = logging.getLogger(__name__)

SentimentSink = Callable[[str, float], None]


def content_fingerprint(url: str, title: str) -> str:
    """Deterministic hash of an article's url and title."""
    return hashlib.sha1(f"{url}\n{title}".encode("utf-8")).hexdigest()


@dataclass
class IngestReport:
    fetched: int = 0
    stored: int = 0
    skipped: int = 0
    failed: int = 0


class NewsIngestor:
    """Batch news job, independent of the quote pipeline.

    Only touches the quote side through ``sentiment_sink`` (normally
    ``FeatureExtractor.add_sentiment``).
    """

    def __init__(
        self,
        keywords: dict[str, str],
        sentiment_sink: SentimentSink,
        store: ArticleStore,
        cache: Cache,
        gdelt: GdeltClient,
        scorer: SentimentScorer | None = None,
        clock: Clock | None = None,
        interval: timedelta = timedelta(minutes=15),
        lookback: timedelta = timedelta(minutes=15),
        max_records: int = 50,
        fingerprint_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self.keywords = dict(keywords)
        self._sink = sentiment_sink
        self._store = store
        self._cache = cache
        self._gdelt = gdelt
        self._scorer = scorer or KeywordSentimentScorer()
        self._clock = clock or SystemClock()
        self.interval = interval
        self._lookback = lookback
        self._max_records = max_records
        self._fingerprint_ttl = fingerprint_ttl
        self._since: dict[str, datetime] = {}
        self._stopped = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sentiment_sink: SentimentSink,
        store: ArticleStore,
        cache: Cache,
        clock: Clock | None = None,
        scorer: SentimentScorer | None = None,
    ) -> NewsIngestor:
        return cls(
            keywords=settings.news_keywords,
            sentiment_sink=sentiment_sink,
            store=store,
            cache=cache,
            gdelt=GdeltClient(settings.gdelt_api_url),
            scorer=scorer,
            clock=clock,
            interval=timedelta(minutes=settings.news_interval_minutes),
            lookback=timedelta(minutes=settings.news_lookback_minutes),
            max_records=settings.news_max_records,
            fingerprint_ttl=timedelta(hours=settings.fingerprint_ttl_hours),
        )

    async def run_once(self) -> IngestReport:
        """Process every keyword once over ``[last run end, now)``."""
        report = IngestReport()
        end = self._clock.now()

        for keyword, symbol in self.keywords.items():
            start = self._since.get(keyword, end - self._lookback)
            try:
                items = await self._gdelt.search(keyword, start, end, self._max_records)
            except Exception as exc:
                logger.warning("News fetch failed for %s: %s", keyword, exc)
                report.failed += 1
                continue
            self._since[keyword] = end
            report.fetched += len(items)

            for item in items:
                try:
                    stored = await self._process(item, keyword, symbol, end)
                except Exception:
                    logger.warning("Failed to process article for %s", keyword, exc_info=True)
                    report.failed += 1
                    continue
                if stored:
                    report.stored += 1
                else:
                    report.skipped += 1

        logger.info(
            "News batch: %d fetched, %d stored, %d skipped, %d failed",
            report.fetched, report.stored, report.skipped, report.failed,
        )
        return report

    async def _process(self, item: dict, keyword: str, symbol: str, seen_at: datetime) -> bool:
        """Returns True when the article was new and scored."""
        article = article_from_gdelt(item, [keyword, symbol], seen_at)
        if article is None:
            return False

        key = f"article:{content_fingerprint(article.url, article.title)}"
        if await self._seen(key):
            return False

        try:
            article_id = await self._store.insert_article(article)
        except DuplicateArticleError:
            logger.debug("Article already stored: %s", article.url)
            await self._remember(key)
            return False

        result = self._scorer.score(article.title)
        await self._store.insert_sentiment(
            SentimentRecord(
                article_id=article_id,
                model=self._scorer.model_name,
                score=result.score,
                confidence=result.confidence,
                tokens=dict(result.tokens),
                ingested_at=self._clock.now(),
            )
        )
        self._sink(symbol, result.score)
        await self._remember(key)
        logger.debug("Stored article %d (%s, %+.1f): %s", article_id, symbol, result.score, article.title)
        return True

    async def _seen(self, key: str) -> bool:
        try:
            return await self._cache.get(key) is not None
        except Exception as exc:
            logger.warning("Fingerprint cache read failed for %s: %s", key, exc)
            return False

    async def _remember(self, key: str) -> None:
        try:
            await self._cache.set(key, "1", self._fingerprint_ttl.total_seconds())
        except Exception as exc:
            logger.warning("Fingerprint cache write failed for %s: %s", key, exc)

    async def run_forever(self) -> None:
        while not self._stopped:
            await self.run_once()
            await self._clock.sleep(self.interval.total_seconds())

    def stop(self) -> None:
        self._stopped = True
