"""Stateful per-symbol signal decision rules and alert policy evaluation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from quanta_stream.config import Settings
from quanta_stream.features.extractor import FeatureSet
from quanta_stream.signals.models import AlertPolicy, Direction, Signal

logger = logging.getLogger(__name__)


@dataclass
class SignalEngineConfig:
    sentiment_threshold: float
    momentum_threshold: float
    volatility_min: float
    volatility_max: float
    cooldown_minutes: float = 5.0
    enable_risk_adjustment: bool = False
    enable_multi_timeframe: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> SignalEngineConfig:
        return cls(
            sentiment_threshold=settings.sentiment_threshold,
            momentum_threshold=settings.momentum_threshold,
            volatility_min=settings.volatility_min,
            volatility_max=settings.volatility_max,
            cooldown_minutes=settings.cooldown_minutes,
            enable_risk_adjustment=settings.enable_risk_adjustment,
            enable_multi_timeframe=settings.enable_multi_timeframe,
        )


def _sign(x: float) -> int:
    return (x > 0) - (x < 0)


def compute_score(features: FeatureSet) -> float:
    """0.4|sentiment_z| + 0.4 * 100|r_5s| + 0.2|ofi|, clamped to [0, 1]."""
    raw = (
        0.4 * abs(features.sentiment_z)
        + 0.4 * abs(features.r_5s) * 100
        + 0.2 * abs(features.ofi_proxy)
    )
    return max(0.0, min(1.0, raw))


class SignalEngine:
    """Evaluates each FeatureSet against the buy/sell rules.

    Rejection order (first match wins):
        1. symbol still inside its cooldown window
        2. rv_30s outside [volatility_min, volatility_max]
        3. r_1s and r_5s disagree in sign

    Holds the only copy of per-symbol cooldown state.
    """

    def __init__(self, config: SignalEngineConfig) -> None:
        self.config = config
        self._last_signal: dict[str, datetime] = {}

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.config.cooldown_minutes)

    def last_signal_time(self, symbol: str) -> datetime | None:
        return self._last_signal.get(symbol)

    def _in_band(self, rv: float, lo: float, hi: float) -> bool:
        return lo <= rv <= hi

    def evaluate(self, symbol: str, features: FeatureSet, timestamp: datetime) -> Signal | None:
        cfg = self.config

        last = self._last_signal.get(symbol)
        if last is not None and timestamp - last < self.cooldown:
            return None

        if not self._in_band(features.rv_30s, cfg.volatility_min, cfg.volatility_max):
            return None

        if _sign(features.r_1s) != _sign(features.r_5s):
            return None

        momentum = abs(features.r_5s)
        if (
            features.sentiment_z > cfg.sentiment_threshold
            and momentum > cfg.momentum_threshold
            and features.r_5s > 0
        ):
            return self._emit(symbol, Direction.BUY, "positive_sentiment_momentum", features, timestamp)

        if (
            features.sentiment_z < -cfg.sentiment_threshold
            and momentum > cfg.momentum_threshold
            and features.r_5s < 0
        ):
            return self._emit(symbol, Direction.SELL, "negative_sentiment_momentum", features, timestamp)

        return None

    def _emit(
        self,
        symbol: str,
        direction: Direction,
        trigger: str,
        features: FeatureSet,
        timestamp: datetime,
    ) -> Signal:
        self._last_signal[symbol] = timestamp
        reasons: dict[str, float | str] = {
            "sentiment_z": features.sentiment_z,
            "r_5s": features.r_5s,
            "rv_30s": features.rv_30s,
            "ofi_proxy": features.ofi_proxy,
            "trigger": trigger,
        }
        if self.config.enable_risk_adjustment:
            reasons["risk"] = self.risk_score(features)
        if self.config.enable_multi_timeframe:
            reasons["timeframes"] = ",".join(self.timeframes(features))
        signal = Signal(
            timestamp=timestamp,
            symbol=symbol,
            direction=direction,
            score=self.score(features),
            reasons=reasons,
        )
        logger.info(
            "Signal %s %s score=%.3f (z=%.2f r_5s=%.5f rv=%.5f)",
            direction.value, symbol, signal.score,
            features.sentiment_z, features.r_5s, features.rv_30s,
        )
        return signal

    def score(self, features: FeatureSet) -> float:
        base = compute_score(features)
        if self.config.enable_risk_adjustment:
            penalty = 0.1 if features.rv_30s > 0.02 else 0.0
            base = max(0.1, base - penalty)
        return base

    def risk_score(self, features: FeatureSet) -> float:
        """Blend of volatility, momentum and sentiment extremity; 0 when risk adjustment is off."""
        if not self.config.enable_risk_adjustment:
            return 0.0
        volatility_risk = min(1.0, features.rv_30s / 0.05)
        momentum_risk = 0.3 if abs(features.r_5s) > 0.01 else 0.1
        sentiment_risk = 0.4 if abs(features.sentiment_z) > 2 else 0.2
        return min(1.0, (volatility_risk + momentum_risk + sentiment_risk) / 3)

    def timeframes(self, features: FeatureSet) -> list[str]:
        """Horizon labels whose move is large enough to matter; empty when disabled."""
        if not self.config.enable_multi_timeframe:
            return []
        labels = []
        if abs(features.r_1s) > 0.001:
            labels.append("1m")
        if abs(features.r_5s) > 0.005:
            labels.append("5m")
        if features.rv_30s > 0.01:
            labels.append("15m")
        return labels

    def evaluate_alert(self, policy: AlertPolicy, features: FeatureSet) -> bool:
        """Volatility band plus sentiment/momentum magnitude; no cooldown, no direction."""
        if not self._in_band(features.rv_30s, policy.volatility_min, policy.volatility_max):
            return False
        return (
            abs(features.sentiment_z) > policy.sentiment_threshold
            and abs(features.r_5s) > policy.momentum_threshold
        )
