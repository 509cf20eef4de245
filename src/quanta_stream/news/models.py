"""News article and sentiment records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from quanta_stream.common.types import JsonDict


@dataclass
class Article:
    """A candidate news article.

    Attributes:
        url: Canonical article URL (unique in storage)
        title: Headline
        published_at: Publish or first-seen time (UTC)
        source: Publishing domain
        tickers: Instrument keywords the article was found under
        language: Language name or code reported by the source
        raw: Original payload from the news source
    """

    url: str
    title: str
    published_at: datetime
    source: str | None = None
    tickers: list[str] = field(default_factory=list)
    language: str | None = None
    raw: JsonDict = field(default_factory=dict)


@dataclass
class SentimentRecord:
    article_id: int
    model: str
    score: float
    confidence: float | None = None
    tokens: JsonDict = field(default_factory=dict)
    ingested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _parse_seendate(value: object) -> datetime | None:
    # GDELT: "20240115T093000Z"
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def article_from_gdelt(item: dict, tickers: list[str], fallback_time: datetime) -> Article | None:
    """Build an Article from one GDELT ``artlist`` entry; None without a url."""
    url = item.get("url")
    if not url or not isinstance(url, str):
        return None
    return Article(
        url=url,
        title=str(item.get("title") or "Untitled"),
        published_at=_parse_seendate(item.get("seendate")) or fallback_time,
        source=item.get("domain"),
        tickers=list(tickers),
        language=item.get("language") or "en",
        raw=dict(item),
    )
