"""Per-instrument micro-features from a bounded trailing price window.

State is kept per canonical symbol in a SymbolState: a 60s price history
and the last 100 sentiment scores. Both are mutated only through this module.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field

import numpy as np

from quanta_stream.common.types import to_epoch_ms
from quanta_stream.market.models import CanonicalQuote

logger = logging.getLogger(__name__)

HISTORY_WINDOW_MS = 60_000
RV_WINDOW_MS = 30_000
SENTIMENT_HISTORY_SIZE = 100


@dataclass(frozen=True)
class FeatureSet:
    """Derived features for one quote.

    Attributes:
        r_1s: return vs. the price closest to 1s ago
        r_5s: return vs. the price closest to 5s ago
        rv_30s: root-sum-of-squared consecutive returns over the last 30s
        ofi_proxy: (bid_size - ask_size) / (bid_size + ask_size) of this quote only
        sentiment_z: z-score of the newest sentiment score vs. its history
    """

    r_1s: float
    r_5s: float
    rv_30s: float
    ofi_proxy: float
    sentiment_z: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


class InstrumentHistory:
    """Time-ordered (epoch_ms, price) pairs for one symbol."""

    def __init__(self, window_ms: int = HISTORY_WINDOW_MS) -> None:
        self.window_ms = window_ms
        self._times: deque[int] = deque()
        self._prices: deque[float] = deque()

    def append(self, ts_ms: int, price: float) -> None:
        self._times.append(ts_ms)
        self._prices.append(price)
        self.evict_before(ts_ms - self.window_ms)

    def evict_before(self, cutoff_ms: int) -> None:
        while self._times and self._times[0] < cutoff_ms:
            self._times.popleft()
            self._prices.popleft()

    def arrays(self) -> tuple[np.ndarray, np.ndarray]:
        return (
            np.fromiter(self._times, dtype=np.int64, count=len(self._times)),
            np.fromiter(self._prices, dtype=np.float64, count=len(self._prices)),
        )

    def points(self) -> list[tuple[int, float]]:
        return list(zip(self._times, self._prices))

    def __len__(self) -> int:
        return len(self._times)


@dataclass
class SymbolState:
    history: InstrumentHistory = field(default_factory=InstrumentHistory)
    sentiment: deque[float] = field(default_factory=lambda: deque(maxlen=SENTIMENT_HISTORY_SIZE))


def closest_return(times: np.ndarray, prices: np.ndarray, now_ms: int, current: float, window_ms: int) -> float:
    """Return vs. the entry nearest ``now - window``; earliest entry wins ties."""
    if len(times) == 0:
        return 0.0
    distances = np.abs(times - (now_ms - window_ms))
    # argmin returns the first occurrence of the minimum
    found = float(prices[int(np.argmin(distances))])
    if not found:
        return 0.0
    return (current - found) / found


def realized_volatility(times: np.ndarray, prices: np.ndarray, now_ms: int, window_ms: int = RV_WINDOW_MS) -> float:
    recent = prices[times >= now_ms - window_ms]
    if len(recent) < 2:
        return 0.0
    prev = recent[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev != 0, np.diff(recent) / prev, 0.0)
    return float(np.sqrt(np.sum(returns ** 2)))


def ofi_proxy(quote: CanonicalQuote) -> float:
    if not quote.bid_size or not quote.ask_size:
        return 0.0
    total = quote.bid_size + quote.ask_size
    if total == 0:
        return 0.0
    return (quote.bid_size - quote.ask_size) / total


def sentiment_zscore(scores: deque[float] | list[float]) -> float:
    if len(scores) < 2:
        return 0.0
    arr = np.asarray(scores, dtype=np.float64)
    # equal scores leave float residue in std(); treat them as zero spread
    if np.ptp(arr) == 0:
        return 0.0
    return float((arr[-1] - arr.mean()) / arr.std())


class FeatureExtractor:
    """Maintains per-symbol state and computes a FeatureSet per quote."""

    def __init__(self) -> None:
        self._states: dict[str, SymbolState] = {}

    def state(self, symbol: str) -> SymbolState:
        st = self._states.get(symbol)
        if st is None:
            st = self._states[symbol] = SymbolState()
        return st

    def symbols(self) -> list[str]:
        return sorted(self._states)

    def add_quote(self, quote: CanonicalQuote) -> bool:
        """Append the quote's last price and evict entries older than 60s.

        Returns False (and records nothing) when the quote has no last price.
        """
        if not quote.last:
            return False
        self.state(quote.symbol).history.append(to_epoch_ms(quote.timestamp), quote.last)
        return True

    def add_sentiment(self, symbol: str, score: float) -> None:
        """The only write path into a symbol's sentiment history."""
        self.state(symbol).sentiment.append(max(-1.0, min(1.0, float(score))))

    def extract_features(self, symbol: str, quote: CanonicalQuote) -> FeatureSet | None:
        st = self._states.get(symbol)
        if st is None or len(st.history) < 2 or not quote.last:
            return None

        now_ms = to_epoch_ms(quote.timestamp)
        times, prices = st.history.arrays()
        current = quote.last

        return FeatureSet(
            r_1s=closest_return(times, prices, now_ms, current, 1_000),
            r_5s=closest_return(times, prices, now_ms, current, 5_000),
            rv_30s=realized_volatility(times, prices, now_ms),
            ofi_proxy=ofi_proxy(quote),
            sentiment_z=sentiment_zscore(st.sentiment),
        )

    def update(self, quote: CanonicalQuote) -> FeatureSet | None:
        """Record a quote and compute its features in one step."""
        if not self.add_quote(quote):
            return None
        return self.extract_features(quote.symbol, quote)
