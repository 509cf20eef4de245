"""Key/value caches with per-entry expiry.

Two backends share the same async interface: an in-process dict for the
short-TTL quote cache, and a SQLite table for the article fingerprint cache,
which must survive restarts for its 24h window to mean anything.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import aiosqlite

from quanta_stream.common.types import Clock, SystemClock

_CREATE_CACHE = """
CREATE TABLE IF NOT EXISTS cache (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


class Cache(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...


class MemoryCache:
    """Dict-backed TTL cache. Expired entries are dropped lazily on read."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._entries: dict[str, tuple[str, float]] = {}

    def _now(self) -> float:
        return self._clock.now().timestamp()

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._now():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._entries[key] = (value, self._now() + ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)


class SqliteCache:
    """TTL cache persisted in the ``cache`` table of the application database."""

    def __init__(self, db_path: Path, clock: Clock | None = None) -> None:
        self._db_path = db_path
        self._clock = clock or SystemClock()
        self._ready = False
        self._lock = asyncio.Lock()

    def _now(self) -> float:
        return self._clock.now().timestamp()

    async def _ensure_db(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(str(self._db_path)) as db:
                await db.execute(_CREATE_CACHE)
                await db.commit()
            self._ready = True

    async def get(self, key: str) -> str | None:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT value FROM cache WHERE key = ? AND expires_at > ?",
                (key, self._now()),
            )
            row = await cursor.fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                """INSERT INTO cache (key, value, expires_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT (key) DO UPDATE
                   SET value = excluded.value, expires_at = excluded.expires_at""",
                (key, value, self._now() + ttl_seconds),
            )
            await db.commit()

    async def prune(self) -> int:
        """Delete expired rows. Returns the number removed."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute("DELETE FROM cache WHERE expires_at <= ?", (self._now(),))
            await db.commit()
            return cursor.rowcount
