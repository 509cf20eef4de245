"""Per-exchange message adapters and symbol normalization.

Each adapter maps one raw upstream payload to a CanonicalQuote, or returns
None when the payload is not a ticker update it understands. Adapters never
raise on malformed input.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable

from quanta_stream.common.types import from_epoch_ms, parse_iso
from quanta_stream.market.models import CanonicalQuote

logger = logging.getLogger(__name__)

# Native exchange symbol -> canonical BASE-QUOTE symbol (USDT quote convention)
SYMBOL_MAPS: dict[str, dict[str, str]] = {
    "coinbase": {
        "BTC-USD": "BTC-USDT",
        "ETH-USD": "ETH-USDT",
        "SOL-USD": "SOL-USDT",
    },
    "binance": {
        "BTCUSDT": "BTC-USDT",
        "ETHUSDT": "ETH-USDT",
        "SOLUSDT": "SOL-USDT",
    },
}

Adapter = Callable[[object, datetime], "CanonicalQuote | None"]


def normalize_symbol(exchange: str, symbol: str) -> str:
    """Map a native symbol to its canonical form; unknown symbols pass through.

    Canonical symbols are never keys of any map, so applying this twice
    gives the same result as applying it once.
    """
    return SYMBOL_MAPS.get(exchange, {}).get(symbol, symbol)


def canonical_symbol(symbol: str) -> str:
    """Canonical form of a symbol given in any exchange's native spelling.

    Raises ValueError when the result is not BASE-QUOTE.
    """
    cleaned = symbol.strip().upper()
    for mapping in SYMBOL_MAPS.values():
        if cleaned in mapping:
            return mapping[cleaned]
    base, sep, quote = cleaned.partition("-")
    if not (sep and base and quote) or "-" in quote:
        raise ValueError(f"not a canonical BASE-QUOTE symbol: {symbol!r}")
    return cleaned


def native_symbol(exchange: str, canonical: str) -> str:
    """Reverse of normalize_symbol for building subscriptions and poll URLs."""
    for native, mapped in SYMBOL_MAPS.get(exchange, {}).items():
        if mapped == canonical:
            return native
    return canonical


def _to_float(value: object) -> float | None:
    """Permissive numeric parse: missing, blank, junk and NaN become None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if math.isnan(f) or math.isinf(f):
        return None
    return f


def _first(message: dict, *keys: str) -> object:
    for key in keys:
        value = message.get(key)
        if value not in (None, ""):
            return value
    return None


def adapt_coinbase(message: object, received_at: datetime) -> CanonicalQuote | None:
    """Coinbase Exchange ``ticker`` channel message (or REST ticker with type injected)."""
    if not isinstance(message, dict) or message.get("type") != "ticker":
        return None
    product_id = message.get("product_id")
    if not product_id or not isinstance(product_id, str):
        return None

    ts = parse_iso(message.get("time")) if isinstance(message.get("time"), str) else None
    return CanonicalQuote(
        timestamp=ts or received_at,
        exchange="coinbase",
        symbol=normalize_symbol("coinbase", product_id),
        last=_to_float(message.get("price")),
        bid=_to_float(_first(message, "best_bid", "bid")),
        ask=_to_float(_first(message, "best_ask", "ask")),
        bid_size=_to_float(message.get("best_bid_size")),
        ask_size=_to_float(message.get("best_ask_size")),
        trade_size=_to_float(_first(message, "last_size", "size")),
    )


def adapt_binance(message: object, received_at: datetime) -> CanonicalQuote | None:
    """Binance ``@ticker`` stream event or REST ``/ticker/24hr`` payload."""
    if isinstance(message, dict) and isinstance(message.get("data"), dict):
        # combined-stream envelope: {"stream": "btcusdt@ticker", "data": {...}}
        message = message["data"]
    if not isinstance(message, dict):
        return None
    symbol = message.get("s") or message.get("symbol")
    if not symbol or not isinstance(symbol, str):
        return None

    event_ms = _to_float(message.get("E"))
    return CanonicalQuote(
        timestamp=from_epoch_ms(event_ms) if event_ms else received_at,
        exchange="binance",
        symbol=normalize_symbol("binance", symbol),
        last=_to_float(_first(message, "c", "lastPrice")),
        bid=_to_float(_first(message, "b", "bidPrice")),
        ask=_to_float(_first(message, "a", "askPrice")),
        bid_size=_to_float(_first(message, "B", "bidQty")),
        ask_size=_to_float(_first(message, "A", "askQty")),
        trade_size=_to_float(_first(message, "Q", "lastQty")),
    )


ADAPTERS: dict[str, Adapter] = {
    "coinbase": adapt_coinbase,
    "binance": adapt_binance,
}


def adapt(source: str, message: object, received_at: datetime) -> CanonicalQuote | None:
    """Dispatch a raw payload to its source adapter.

    Returns None for unknown sources and for anything the adapter rejects or
    fails to parse.
    """
    adapter = ADAPTERS.get(source)
    if adapter is None:
        return None
    try:
        return adapter(message, received_at)
    except (TypeError, ValueError, KeyError, AttributeError, OverflowError, OSError):
        logger.debug("Dropping malformed %s payload: %r", source, message)
        return None
