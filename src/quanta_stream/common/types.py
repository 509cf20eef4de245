"""Shared type aliases, clock abstraction and time helpers."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol, TypeAlias

# JSON-like dict
JsonDict: TypeAlias = dict[str, object]


class Clock(Protocol):
    """Source of wall-clock time and sleeping, injectable for tests."""

    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real UTC clock backed by asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def to_epoch_ms(dt: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return int(round(dt.timestamp() * 1000))


def from_epoch_ms(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def to_iso(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
