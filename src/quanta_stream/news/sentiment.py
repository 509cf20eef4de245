"""Pluggable headline sentiment scoring."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

POSITIVE_WORDS = ("bullish", "surge", "rally", "gains", "up", "rise", "positive", "growth")
NEGATIVE_WORDS = ("bearish", "crash", "dump", "losses", "down", "fall", "negative", "decline")


@dataclass
class SentimentResult:
    score: float
    confidence: float
    tokens: dict[str, list[str]] = field(default_factory=dict)


class SentimentScorer(Protocol):
    model_name: str

    def score(self, text: str) -> SentimentResult:
        ...


class KeywordSentimentScorer:
    """Keyword hits: +0.1 per positive word present, -0.1 per negative, clamped to [-1, 1].

    Matching is substring-based on lower-cased text and each word counts once.
    """

    model_name = "keyword-v1"

    def __init__(
        self,
        positive: tuple[str, ...] = POSITIVE_WORDS,
        negative: tuple[str, ...] = NEGATIVE_WORDS,
        step: float = 0.1,
        confidence: float = 0.8,
    ) -> None:
        self.positive = positive
        self.negative = negative
        self.step = step
        self.confidence = confidence

    def score(self, text: str) -> SentimentResult:
        lower = text.lower()
        pos = [w for w in self.positive if w in lower]
        neg = [w for w in self.negative if w in lower]
        raw = self.step * len(pos) - self.step * len(neg)
        return SentimentResult(
            score=max(-1.0, min(1.0, round(raw, 10))),
            confidence=self.confidence,
            tokens={"positive": pos, "negative": neg},
        )
