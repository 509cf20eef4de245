"""Signal and alert policy models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from quanta_stream.common.types import JsonDict, to_iso
from quanta_stream.market.adapters import canonical_symbol


class Direction(Enum):
    """Signal direction.

    WATCH is part of the wire schema but no decision rule produces it yet.
    """

    BUY = "buy"
    SELL = "sell"
    WATCH = "watch"


@dataclass
class Signal:
    """A directional trade signal emitted by the decision engine.

    Attributes:
        timestamp: Time of the quote that triggered the signal
        symbol: Canonical symbol
        direction: buy / sell (watch is reserved)
        score: Strength in [0, 1]
        reasons: Feature values and trigger label behind the decision
    """

    timestamp: datetime
    symbol: str
    direction: Direction
    score: float
    reasons: dict[str, float | str] = field(default_factory=dict)

    def to_dict(self) -> JsonDict:
        return {
            "ts": to_iso(self.timestamp),
            "symbol": self.symbol,
            "direction": self.direction.value,
            "score": self.score,
            "reasons": dict(self.reasons),
        }


class AlertPolicy(BaseModel):
    """User-defined alert rule evaluated against each FeatureSet for its symbol."""

    symbol: str
    sentiment_threshold: float = Field(ge=0)
    momentum_threshold: float = Field(ge=0)
    volatility_min: float = Field(ge=0)
    volatility_max: float = Field(ge=0)
    cooldown_minutes: float = Field(default=5, ge=0)
    description: str = ""

    @field_validator("symbol")
    @classmethod
    def _canonical_symbol(cls, v: str) -> str:
        return canonical_symbol(v)

    @model_validator(mode="after")
    def _band_ordered(self) -> AlertPolicy:
        if self.volatility_min > self.volatility_max:
            raise ValueError("volatility_min must not exceed volatility_max")
        return self
