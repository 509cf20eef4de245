"""Article and sentiment persistence (aiosqlite)."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path

import aiosqlite

from quanta_stream.common.types import to_iso
from quanta_stream.config import get_settings
from quanta_stream.news.models import Article, SentimentRecord

_CREATE_ARTICLES = """
CREATE TABLE IF NOT EXISTS articles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    ts_publish TEXT NOT NULL,
    source TEXT,
    tickers TEXT NOT NULL,
    lang TEXT,
    raw TEXT NOT NULL
);
"""

_CREATE_SENTIMENTS = """
CREATE TABLE IF NOT EXISTS sentiments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id INTEGER NOT NULL REFERENCES articles(id),
    model TEXT NOT NULL,
    score REAL NOT NULL,
    confidence REAL,
    tokens TEXT NOT NULL,
    ts_ingested TEXT NOT NULL
);
"""

_CREATE_ARTICLES_INDEX = """
CREATE INDEX IF NOT EXISTS idx_articles_ts ON articles(ts_publish);
"""


class DuplicateArticleError(Exception):
    """The article's url is already stored."""


class ArticleStore:
    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or get_settings().db_path
        self._ready = False
        self._lock = asyncio.Lock()

    async def _ensure_db(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(str(self._db_path)) as db:
                await db.execute(_CREATE_ARTICLES)
                await db.execute(_CREATE_SENTIMENTS)
                await db.execute(_CREATE_ARTICLES_INDEX)
                await db.commit()
            self._ready = True

    async def insert_article(self, article: Article) -> int:
        """Insert an article. Raises DuplicateArticleError on a url conflict."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            try:
                cursor = await db.execute(
                    """INSERT INTO articles (url, title, ts_publish, source, tickers, lang, raw)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        article.url,
                        article.title,
                        to_iso(article.published_at),
                        article.source,
                        json.dumps(article.tickers),
                        article.language,
                        json.dumps(article.raw, default=str),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateArticleError(article.url) from exc
            await db.commit()
            return cursor.lastrowid

    async def insert_sentiment(self, record: SentimentRecord) -> int:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                """INSERT INTO sentiments (article_id, model, score, confidence, tokens, ts_ingested)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    record.article_id,
                    record.model,
                    record.score,
                    record.confidence,
                    json.dumps(record.tokens),
                    to_iso(record.ingested_at),
                ),
            )
            await db.commit()
            return cursor.lastrowid

    async def recent(self, ticker: str | None = None, limit: int = 30) -> list[dict]:
        """Newest articles first, each with its sentiment rows."""
        await self._ensure_db()
        query = "SELECT id, url, title, ts_publish, source, tickers, lang FROM articles"
        params: tuple = ()
        if ticker:
            query += " WHERE tickers LIKE ?"
            params = (f'%"{ticker}"%',)
        query += " ORDER BY ts_publish DESC, id DESC LIMIT ?"

        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params + (limit,))
            articles = [
                {
                    "id": row["id"],
                    "url": row["url"],
                    "title": row["title"],
                    "ts_publish": row["ts_publish"],
                    "source": row["source"],
                    "tickers": json.loads(row["tickers"]),
                    "lang": row["lang"],
                    "sentiments": [],
                }
                for row in await cursor.fetchall()
            ]
            if not articles:
                return []

            by_id = {a["id"]: a for a in articles}
            placeholders = ",".join("?" for _ in by_id)
            cursor = await db.execute(
                f"""SELECT article_id, model, score, confidence, ts_ingested
                    FROM sentiments WHERE article_id IN ({placeholders})""",
                tuple(by_id),
            )
            for row in await cursor.fetchall():
                by_id[row["article_id"]]["sentiments"].append({
                    "model": row["model"],
                    "score": row["score"],
                    "confidence": row["confidence"],
                    "ts_ingested": row["ts_ingested"],
                })
        return articles

    async def counts(self) -> dict[str, int]:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM articles")
            articles = (await cursor.fetchone())[0]
            cursor = await db.execute("SELECT COUNT(*) FROM sentiments")
            sentiments = (await cursor.fetchone())[0]
        return {"articles": articles, "sentiments": sentiments}
