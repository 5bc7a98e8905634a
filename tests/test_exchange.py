import asyncio
import threading

import pandas as pd
import pytest

import exchange
from exchange import (
    DEFAULT_PRECISION,
    BinanceFuturesMarket,
    FuturesOrderGateway,
    MarketDataError,
    OrderSubmissionError,
    SymbolPrecision,
    SymbolUniverse,
    calc_order_quantity,
    klines_to_frame,
)


def _kline(open_ms, close):
    return [open_ms, str(close - 1), str(close + 1), str(close - 2), str(close), "12.5",
            open_ms + 179_999, "1000", 10, "5", "500", "0"]


class FakeClient:
    def __init__(self):
        self.kline_calls = []
        self.orders = []

    def futures_klines(self, symbol, interval, limit):
        self.kline_calls.append((symbol, interval, limit))
        return [_kline(1_700_000_000_000 + i * 180_000, 100 + i) for i in range(limit)]

    def futures_symbol_ticker(self, symbol):
        return {"symbol": symbol, "price": "101.5"}

    def futures_position_information(self):
        return [
            {"symbol": "BTCUSDT", "positionAmt": "0.010", "entryPrice": "30000", "updateTime": 1},
            {"symbol": "ETHUSDT", "positionAmt": "0.000", "entryPrice": "0", "updateTime": 0},
            {"symbol": "SOLUSDT", "positionAmt": "-3", "entryPrice": "20.5", "updateTime": 2},
        ]

    def futures_account(self):
        return {"assets": [{"asset": "BNB", "availableBalance": "1"},
                           {"asset": "USDT", "availableBalance": "250.75"}]}

    def futures_exchange_info(self):
        return {
            "symbols": [
                {
                    "symbol": "BTCUSDT",
                    "pricePrecision": 2,
                    "quantityPrecision": 3,
                    "filters": [{"filterType": "PRICE_FILTER", "tickSize": "0.10"}],
                }
            ]
        }

    def futures_create_order(self, **params):
        self.orders.append(params)
        return {"orderId": len(self.orders)}


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr(exchange.time, "sleep", lambda seconds: None)


def test_klines_to_frame_parses_numbers_and_index():
    frame = klines_to_frame([_kline(1_700_000_000_000, 100), _kline(1_700_000_180_000, 101)])

    assert list(frame.columns) == ["open", "high", "low", "close", "volume"]
    assert frame["close"].tolist() == [100.0, 101.0]
    assert isinstance(frame.index, pd.DatetimeIndex)
    assert str(frame.index.tz) == "UTC"
    assert klines_to_frame([]).empty


def test_fetch_candles_drops_open_candle():
    client = FakeClient()
    market = BinanceFuturesMarket(client)

    candles = market.fetch_candles("BTCUSDT", "3m", 101)

    assert client.kline_calls == [("BTCUSDT", "3m", 101)]
    assert len(candles) == 100
    assert candles["close"].iloc[-1] == 199.0


def test_account_and_position_queries():
    market = BinanceFuturesMarket(FakeClient())

    assert market.get_price("BTCUSDT") == 101.5
    assert market.get_usdt_balance() == 250.75
    positions = market.get_positions()
    assert [p["symbol"] for p in positions] == ["BTCUSDT", "SOLUSDT"]
    assert positions[1]["positionAmt"] == -3.0
    assert market.get_precisions() == {"BTCUSDT": SymbolPrecision(2, 3, 0.1)}


def test_missing_usdt_asset_raises():
    client = FakeClient()
    client.futures_account = lambda: {"assets": []}

    with pytest.raises(MarketDataError):
        BinanceFuturesMarket(client).get_usdt_balance()


def test_retries_then_raises_market_data_error():
    attempts = []

    def flaky():
        attempts.append(1)
        raise ConnectionError("reset by peer")

    with pytest.raises(MarketDataError):
        exchange._call_with_retries(flaky, "fetch something", max_attempts=3)
    assert len(attempts) == 3


def test_retries_recover():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("429 Too Many Requests")
        return "ok"

    assert exchange._call_with_retries(flaky, "fetch something") == "ok"
    assert len(attempts) == 2


def test_async_candle_timeout_is_treated_as_missing():
    client = FakeClient()

    def slow_klines(symbol, interval, limit):
        # time.sleep is patched out by the fixture
        threading.Event().wait(0.3)
        return []

    client.futures_klines = slow_klines
    market = BinanceFuturesMarket(client, timeout=0.05)

    assert asyncio.run(market.fetch_candles_async("BTCUSDT", "3m", 10)) is None


def test_async_wrappers_return_values():
    market = BinanceFuturesMarket(FakeClient())

    candles = asyncio.run(market.fetch_candles_async("BTCUSDT", "15m", 16))
    price = asyncio.run(market.get_price_async("BTCUSDT"))

    assert len(candles) == 15
    assert price == 101.5


def test_calc_order_quantity():
    assert calc_order_quantity(1000.0, 0.1, 10, 250.0) == pytest.approx(4.0)
    assert calc_order_quantity(1000.0, 0.1, 10, 3.0, quantity_precision=3) == pytest.approx(333.333)
    assert calc_order_quantity(1000.0, 0.1, 10, 0.0) == 0.0


def test_order_gateway_params():
    client = FakeClient()
    gateway = FuturesOrderGateway(client)

    gateway.market_order("BTCUSDT", "SELL", 0.01, reduce_only=True)
    gateway.stop_loss_order("BTCUSDT", "SELL", 29000.0)
    gateway.take_profit_order("BTCUSDT", "SELL", 31000.0)

    assert client.orders[0] == {
        "symbol": "BTCUSDT", "side": "SELL", "type": "MARKET", "quantity": 0.01, "reduceOnly": "true",
    }
    assert client.orders[1]["type"] == "STOP_MARKET"
    assert client.orders[1]["stopPrice"] == 29000.0
    assert client.orders[2]["type"] == "TAKE_PROFIT_MARKET"


def test_rejected_order_carries_params():
    class RejectingClient(FakeClient):
        def futures_create_order(self, **params):
            raise RuntimeError("APIError(code=-2019): Margin is insufficient.")

    gateway = FuturesOrderGateway(RejectingClient())

    with pytest.raises(OrderSubmissionError) as excinfo:
        gateway.market_order("BTCUSDT", "BUY", 1.0)
    assert excinfo.value.params["symbol"] == "BTCUSDT"
    assert "Margin is insufficient" in str(excinfo.value)


def test_symbol_universe_selects_and_caches(tmp_path):
    universe = SymbolUniverse(str(tmp_path / "top.json"), str(tmp_path / "precision.json"), size=2)
    tickers = [
        {"symbol": "BTCUSDT", "quoteVolume": "900"},
        {"symbol": "ETHUSDT", "quoteVolume": "1200"},
        {"symbol": "ETHBTC", "quoteVolume": "5000"},
        {"symbol": "BTCUSDT_240628", "quoteVolume": "8000"},
        {"symbol": "DOGEUSDT", "quoteVolume": "100"},
    ]

    assert universe.refresh(tickers) == ["ETHUSDT", "BTCUSDT"]
    assert universe.symbols() == ["ETHUSDT", "BTCUSDT"]


def test_symbol_universe_precisions(tmp_path):
    universe = SymbolUniverse(str(tmp_path / "top.json"), str(tmp_path / "precision.json"))

    assert universe.precision("BTCUSDT") == DEFAULT_PRECISION
    universe.save_precisions({"BTCUSDT": SymbolPrecision(1, 3, 0.1)})
    assert universe.precision("BTCUSDT") == SymbolPrecision(1, 3, 0.1)
