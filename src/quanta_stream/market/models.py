"""Canonical quote model."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from quanta_stream.common.types import JsonDict, parse_iso, to_iso

_NUMERIC_FIELDS = ("last", "bid", "ask", "bid_size", "ask_size", "trade_size")


@dataclass(frozen=True)
class CanonicalQuote:
    """A normalized top-of-book / last-trade update from one exchange.

    Attributes:
        timestamp: Quote time (UTC)
        exchange: Source exchange id, e.g. "coinbase"
        symbol: Canonical BASE-QUOTE symbol, e.g. "BTC-USDT"
        last: Last traded price
        bid: Best bid price
        ask: Best ask price
        bid_size: Size resting at the best bid
        ask_size: Size resting at the best ask
        trade_size: Size of the last trade
    """

    timestamp: datetime
    exchange: str
    symbol: str
    last: float | None = None
    bid: float | None = None
    ask: float | None = None
    bid_size: float | None = None
    ask_size: float | None = None
    trade_size: float | None = None

    def to_dict(self) -> JsonDict:
        """Wire form; absent numeric fields are omitted."""
        out: JsonDict = {
            "ts": to_iso(self.timestamp),
            "exchange": self.exchange,
            "symbol": self.symbol,
        }
        for name in _NUMERIC_FIELDS:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out

    @classmethod
    def from_dict(cls, data: dict) -> CanonicalQuote:
        ts = parse_iso(data.get("ts"))
        if ts is None:
            raise ValueError(f"quote is missing a valid ts: {data!r}")
        return cls(
            timestamp=ts,
            exchange=str(data["exchange"]),
            symbol=str(data["symbol"]),
            **{name: data.get(name) for name in _NUMERIC_FIELDS},
        )
