"""Tests for symbol normalization and per-exchange quote adapters."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from quanta_stream.market.adapters import (
    SYMBOL_MAPS,
    adapt,
    adapt_binance,
    adapt_coinbase,
    canonical_symbol,
    native_symbol,
    normalize_symbol,
)

RECEIVED = datetime(2024, 1, 15, 12, 0, 5, tzinfo=timezone.utc)


class TestNormalizeSymbol:
    @pytest.mark.parametrize("exchange,native,canonical", [
        ("coinbase", "BTC-USD", "BTC-USDT"),
        ("coinbase", "SOL-USD", "SOL-USDT"),
        ("binance", "ETHUSDT", "ETH-USDT"),
    ])
    def test_known_symbols(self, exchange, native, canonical):
        assert normalize_symbol(exchange, native) == canonical

    def test_unknown_symbol_passes_through(self):
        assert normalize_symbol("binance", "DOGEUSDT") == "DOGEUSDT"

    def test_unknown_exchange_passes_through(self):
        assert normalize_symbol("kraken", "XBT/USD") == "XBT/USD"

    def test_idempotent(self):
        for exchange, mapping in SYMBOL_MAPS.items():
            for native in list(mapping) + ["ABC-XYZ"]:
                once = normalize_symbol(exchange, native)
                assert normalize_symbol(exchange, once) == once

    @pytest.mark.parametrize("given,expected", [
        ("BTCUSDT", "BTC-USDT"),
        (" btc-usd ", "BTC-USDT"),
        ("eth-usdt", "ETH-USDT"),
        ("AVAX-USDT", "AVAX-USDT"),
    ])
    def test_canonical_symbol_any_spelling(self, given, expected):
        assert canonical_symbol(given) == expected

    @pytest.mark.parametrize("given", ["DOGEUSDT", "BTC", "-USDT", "BTC-", "A-B-C"])
    def test_canonical_symbol_rejects_unmapped(self, given):
        with pytest.raises(ValueError):
            canonical_symbol(given)

    def test_native_symbol_reverses(self):
        assert native_symbol("coinbase", "BTC-USDT") == "BTC-USD"
        assert native_symbol("binance", "SOL-USDT") == "SOLUSDT"
        assert native_symbol("binance", "DOGE-USDT") == "DOGE-USDT"


class TestCoinbase:
    def test_ticker_message(self):
        quote = adapt_coinbase({
            "type": "ticker",
            "product_id": "BTC-USD",
            "price": "50000.5",
            "best_bid": "50000.0",
            "best_ask": "50001.0",
            "best_bid_size": "1.5",
            "best_ask_size": "0.5",
            "last_size": "0.01",
            "time": "2024-01-15T12:00:00.123456Z",
        }, RECEIVED)

        assert quote is not None
        assert quote.exchange == "coinbase"
        assert quote.symbol == "BTC-USDT"
        assert quote.last == 50000.5
        assert quote.bid == 50000.0
        assert quote.ask == 50001.0
        assert quote.bid_size == 1.5
        assert quote.ask_size == 0.5
        assert quote.trade_size == 0.01
        assert quote.timestamp == datetime(2024, 1, 15, 12, 0, 0, 123456, tzinfo=timezone.utc)

    def test_non_ticker_ignored(self):
        assert adapt_coinbase({"type": "subscriptions", "channels": []}, RECEIVED) is None

    def test_missing_product_ignored(self):
        assert adapt_coinbase({"type": "ticker", "price": "1"}, RECEIVED) is None

    def test_bad_time_falls_back_to_received(self):
        quote = adapt_coinbase({"type": "ticker", "product_id": "ETH-USD", "price": "2500", "time": "yesterday"}, RECEIVED)
        assert quote.timestamp == RECEIVED

    def test_junk_numbers_become_none(self):
        quote = adapt_coinbase({
            "type": "ticker", "product_id": "ETH-USD", "price": "abc", "best_bid": "", "best_ask": "NaN",
        }, RECEIVED)
        assert quote.last is None
        assert quote.bid is None
        assert quote.ask is None


class TestBinance:
    def test_combined_stream_envelope(self):
        quote = adapt_binance({
            "stream": "btcusdt@ticker",
            "data": {
                "e": "24hrTicker",
                "E": 1705320000000,
                "s": "BTCUSDT",
                "c": "42000.1",
                "b": "42000.0",
                "B": "2",
                "a": "42000.2",
                "A": "1",
                "Q": "0.05",
            },
        }, RECEIVED)

        assert quote.symbol == "BTC-USDT"
        assert quote.exchange == "binance"
        assert quote.last == 42000.1
        assert quote.bid_size == 2.0
        assert quote.ask_size == 1.0
        assert quote.trade_size == 0.05
        assert quote.timestamp == datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def test_rest_ticker_fields(self):
        quote = adapt_binance({
            "symbol": "ETHUSDT",
            "lastPrice": "2500.5",
            "bidPrice": "2500.0",
            "askPrice": "2501.0",
            "bidQty": "3",
            "askQty": "4",
            "lastQty": "0.2",
        }, RECEIVED)

        assert quote.symbol == "ETH-USDT"
        assert quote.last == 2500.5
        assert quote.bid == 2500.0
        assert quote.ask_size == 4.0
        assert quote.timestamp == RECEIVED

    def test_missing_symbol_ignored(self):
        assert adapt_binance({"c": "1"}, RECEIVED) is None


class TestAdaptDispatch:
    def test_dispatches_by_source(self):
        quote = adapt("binance", {"s": "SOLUSDT", "c": "100"}, RECEIVED)
        assert quote.symbol == "SOL-USDT"

    def test_unknown_source(self):
        assert adapt("kraken", {"s": "SOLUSDT"}, RECEIVED) is None

    @pytest.mark.parametrize("payload", [None, "text", 42, [1, 2], {}])
    def test_malformed_payloads_return_none(self, payload):
        assert adapt("coinbase", payload, RECEIVED) is None
        assert adapt("binance", payload, RECEIVED) is None

    def test_out_of_range_timestamp_never_raises(self):
        assert adapt("binance", {"s": "BTCUSDT", "c": "1", "E": 1e20}, RECEIVED) is None
