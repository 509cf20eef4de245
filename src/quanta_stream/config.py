"""Application configuration via pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_SOURCES = ("coinbase", "binance")


class ConfigurationError(RuntimeError):
    """Unrecoverable configuration problem detected at startup."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUANTA_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Canonical instruments tracked by every source
    symbols: list[str] = ["BTC-USDT", "ETH-USDT", "SOL-USDT"]

    # Sources consumed over a push connection / by REST polling
    stream_sources: list[str] = ["coinbase", "binance"]
    poll_sources: list[str] = []

    # Exchange endpoints
    coinbase_ws_url: str = "wss://ws-feed.exchange.coinbase.com"
    coinbase_rest_url: str = "https://api.exchange.coinbase.com"
    binance_ws_url: str = "wss://stream.binance.com:9443"
    binance_rest_url: str = "https://api.binance.com"

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    http_timeout: float = 10.0
    io_timeout: float = 5.0

    # Reconnection: base * 2^attempt + uniform(0, jitter), capped per source
    reconnect_base_delay: float = 1.0
    reconnect_max_attempts: int = 5
    reconnect_jitter: float = 1.0
    reconnect_max_delay: float = 60.0

    # REST polling
    poll_interval: float = 2.0
    quote_cache_ttl: int = 60

    # Signal engine thresholds
    sentiment_threshold: float = 1.0
    momentum_threshold: float = 0.001
    volatility_min: float = 0.0001
    volatility_max: float = 0.05
    cooldown_minutes: float = 5.0
    enable_risk_adjustment: bool = False
    enable_multi_timeframe: bool = False

    # SSE broadcaster
    heartbeat_interval: float = 15.0
    sse_retry_ms: int = 3000
    subscriber_queue_size: int = 256

    # News ingestion (keyword -> canonical symbol)
    gdelt_api_url: str = "https://api.gdeltproject.org/api/v2/doc"
    news_keywords: dict[str, str] = {
        "BTC": "BTC-USDT",
        "Bitcoin": "BTC-USDT",
        "ETH": "ETH-USDT",
        "Ethereum": "ETH-USDT",
        "SOL": "SOL-USDT",
        "Solana": "SOL-USDT",
    }
    news_interval_minutes: float = 15.0
    news_lookback_minutes: float = 15.0
    news_max_records: int = 50
    fingerprint_ttl_hours: float = 24.0

    # SQLite database for signals, alert policies, articles and caches
    db_path: Path = Path.home() / ".quanta-stream" / "quanta.db"

    # Telegram notifications
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_enabled: bool = False

    # Background news loop inside `serve`
    news_enabled: bool = True

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8787

    log_level: str = "INFO"

    @field_validator("stream_sources", "poll_sources")
    @classmethod
    def _sources_known(cls, v: list[str]) -> list[str]:
        v = [s.strip().lower() for s in v if s.strip()]
        unknown = [s for s in v if s not in KNOWN_SOURCES]
        if unknown:
            raise ValueError(f"unknown sources {unknown}, expected any of {KNOWN_SOURCES}")
        return v

    @field_validator("symbols")
    @classmethod
    def _symbols_upper(cls, v: list[str]) -> list[str]:
        return [s.strip().upper() for s in v if s.strip()]

    @field_validator("reconnect_max_attempts")
    @classmethod
    def _attempts_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"reconnect_max_attempts must be >= 0, got {v}")
        return v

    @field_validator("poll_interval", "heartbeat_interval", "reconnect_base_delay")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"interval must be > 0, got {v}")
        return v

    @field_validator("sentiment_threshold", "momentum_threshold", "cooldown_minutes")
    @classmethod
    def _threshold_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"threshold must be >= 0, got {v}")
        return v

    @model_validator(mode="after")
    def _volatility_band(self) -> Settings:
        if self.volatility_min > self.volatility_max:
            raise ValueError(
                f"volatility_min ({self.volatility_min}) exceeds volatility_max ({self.volatility_max})"
            )
        return self


def get_settings() -> Settings:
    """Load settings from the environment and .env file."""
    return Settings()
