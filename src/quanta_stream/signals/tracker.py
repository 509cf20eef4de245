"""SQLite persistence for emitted signals and alert policies."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from quanta_stream.common.types import parse_iso
from quanta_stream.config import get_settings
from quanta_stream.signals.models import AlertPolicy, Direction, Signal

_CREATE_SIGNALS = """
CREATE TABLE IF NOT EXISTS signals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ts TEXT NOT NULL,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL,
    score REAL NOT NULL,
    reasons TEXT NOT NULL
);
"""

_CREATE_SIGNALS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_signals_symbol_ts ON signals(symbol, ts);
"""

_CREATE_ALERT_POLICIES = """
CREATE TABLE IF NOT EXISTS alert_policies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    policy TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
"""


class SignalTracker:
    """Signal and alert policy log backed by aiosqlite."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or get_settings().db_path
        self._ready = False
        self._lock = asyncio.Lock()

    async def _ensure_db(self) -> None:
        """Create database and tables if they don't exist."""
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(str(self._db_path)) as db:
                await db.execute(_CREATE_SIGNALS)
                await db.execute(_CREATE_SIGNALS_INDEX)
                await db.execute(_CREATE_ALERT_POLICIES)
                await db.commit()
            self._ready = True

    async def log_signal(self, signal: Signal) -> int:
        """Log a signal to the database. Returns the row ID."""
        await self._ensure_db()
        wire = signal.to_dict()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                """INSERT INTO signals (ts, symbol, direction, score, reasons)
                   VALUES (?, ?, ?, ?, ?)""",
                (wire["ts"], signal.symbol, signal.direction.value, signal.score, json.dumps(signal.reasons)),
            )
            await db.commit()
            return cursor.lastrowid

    async def recent_signals(self, limit: int = 10, symbol: str | None = None) -> list[dict]:
        """Most recent signals first, in wire form plus their row id."""
        await self._ensure_db()
        query = "SELECT id, ts, symbol, direction, score, reasons FROM signals"
        params: tuple = ()
        if symbol:
            query += " WHERE symbol = ?"
            params = (symbol,)
        query += " ORDER BY ts DESC, id DESC LIMIT ?"
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params + (limit,))
            rows = await cursor.fetchall()
            return [
                {
                    "id": row["id"],
                    "ts": row["ts"],
                    "symbol": row["symbol"],
                    "direction": row["direction"],
                    "score": row["score"],
                    "reasons": json.loads(row["reasons"]),
                }
                for row in rows
            ]

    async def load_signals(self, limit: int = 10) -> list[Signal]:
        rows = await self.recent_signals(limit)
        return [
            Signal(
                timestamp=parse_iso(row["ts"]) or datetime.now(timezone.utc),
                symbol=row["symbol"],
                direction=Direction(row["direction"]),
                score=row["score"],
                reasons=row["reasons"],
            )
            for row in rows
        ]

    async def save_policy(self, policy: AlertPolicy) -> int:
        """Store an alert policy as active. Returns the row ID."""
        await self._ensure_db()
        now = datetime.now(timezone.utc).isoformat()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "INSERT INTO alert_policies (symbol, policy, active, created_at) VALUES (?, ?, 1, ?)",
                (policy.symbol, policy.model_dump_json(), now),
            )
            await db.commit()
            return cursor.lastrowid

    async def active_policies(self) -> list[tuple[int, AlertPolicy]]:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT id, policy FROM alert_policies WHERE active = 1 ORDER BY id"
            )
            rows = await cursor.fetchall()
            return [(row[0], AlertPolicy.model_validate_json(row[1])) for row in rows]

    async def deactivate_policy(self, policy_id: int) -> bool:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "UPDATE alert_policies SET active = 0 WHERE id = ? AND active = 1", (policy_id,),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_summary(self) -> dict:
        """Signal counts by direction, plus the active policy count."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT direction, COUNT(*) AS n, AVG(score) AS avg_score FROM signals GROUP BY direction"
            )
            by_direction = {
                row["direction"]: {"count": row["n"], "avg_score": row["avg_score"]}
                for row in await cursor.fetchall()
            }
            cursor = await db.execute("SELECT COUNT(*) AS n FROM alert_policies WHERE active = 1")
            policies = (await cursor.fetchone())["n"]
        return {
            "total_signals": sum(v["count"] for v in by_direction.values()),
            "by_direction": by_direction,
            "active_policies": policies,
        }
