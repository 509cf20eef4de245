"""Server-sent events wire format.

Every frame is ``data: <json>\\n\\n`` carrying an envelope
``{"type": "tick" | "ping" | "signal", "data": ...}``; a stream opens with a
single ``retry: <ms>\\n\\n`` directive.
"""

from __future__ import annotations

import json
from datetime import datetime

from quanta_stream.common.types import to_iso
from quanta_stream.market.models import CanonicalQuote
from quanta_stream.signals.models import Signal

MESSAGE_TYPES = ("tick", "ping", "signal")


def retry_directive(retry_ms: int = 3000) -> str:
    return f"retry: {retry_ms}\n\n"


def encode_event(message_type: str, data: object) -> str:
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"unknown SSE message type {message_type!r}")
    payload = json.dumps({"type": message_type, "data": data}, separators=(",", ":"))
    return f"data: {payload}\n\n"


def tick_event(quote: CanonicalQuote) -> str:
    return encode_event("tick", quote.to_dict())


def signal_event(signal: Signal) -> str:
    return encode_event("signal", signal.to_dict())


def ping_event(at: datetime) -> str:
    return encode_event("ping", {"ts": to_iso(at)})


def parse_symbols(raw: str | None, default: list[str]) -> frozenset[str]:
    """Parse a pipe-delimited symbol list such as ``BTC-USDT|ETH-USDT``."""
    if not raw:
        return frozenset(default)
    symbols = frozenset(s.strip().upper() for s in raw.split("|") if s.strip())
    return symbols or frozenset(default)


def decode_frames(chunk: str) -> list[dict]:
    """Decode the ``data:`` frames in a chunk of stream text (client side / tests)."""
    events = []
    for block in chunk.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events
