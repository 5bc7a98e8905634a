"""
Binance USDⓈ-M futures adapters for the engine.

``BinanceFuturesMarket`` exposes the read side the engine consumes
(candles, prices, 24h tickers, positions, balances, precisions) and
``FuturesOrderGateway`` the thin order-submission side.  Both wrap the
blocking ``python-binance`` client; the ``*_async`` helpers run it in the
default executor with a bounded timeout so one slow symbol cannot stall a
cycle.

Candles are returned as ``pandas`` frames indexed by open time with the
final (possibly still open) candle already removed.
"""

from __future__ import annotations

import asyncio
import functools
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

import pandas as pd
from binance.client import Client

from config import ExchangeSettings
from indicators import OHLCV_COLUMNS, closed_candles
from json_store import dump_json, load_json
from log_utils import setup_logger

logger = setup_logger(__name__)

_T = TypeVar("_T")

_KLINE_COLUMNS: Sequence[str] = (
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base",
    "taker_buy_quote",
    "ignore",
)

_RATE_LIMIT_KEYWORDS = (
    "Too Many Requests",
    "-1003",  # Binance rate limit error code
    "IP banned",
    "429",
)


class MarketDataError(RuntimeError):
    """Raised when the exchange cannot supply the requested market data."""


class OrderSubmissionError(RuntimeError):
    """Raised when an order request is rejected or cannot be delivered."""

    def __init__(self, message: str, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.params = dict(params or {})


@dataclass(frozen=True)
class SymbolPrecision:
    price_precision: int = 4
    quantity_precision: int = 3
    tick_size: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pricePrecision": self.price_precision,
            "quantityPrecision": self.quantity_precision,
            "tickSize": self.tick_size,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SymbolPrecision":
        return cls(
            price_precision=int(data.get("pricePrecision", 4)),
            quantity_precision=int(data.get("quantityPrecision", 3)),
            tick_size=float(data.get("tickSize", 0.0) or 0.0),
        )


DEFAULT_PRECISION = SymbolPrecision()


def klines_to_frame(raw: Iterable[Sequence[object]]) -> pd.DataFrame:
    """Shape raw kline payloads into an OHLCV DataFrame indexed by open time."""

    df = pd.DataFrame(list(raw), columns=list(_KLINE_COLUMNS))
    if df.empty:
        return pd.DataFrame(columns=list(OHLCV_COLUMNS))
    df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
    numeric_cols = list(OHLCV_COLUMNS)
    df[numeric_cols] = df[numeric_cols].apply(pd.to_numeric, errors="coerce")
    df = df.sort_values("open_time").set_index("open_time")
    return df[numeric_cols]


def _is_rate_limit_error(exc: Exception) -> bool:
    text = getattr(exc, "message", None) or str(exc)
    return bool(text) and any(marker in text for marker in _RATE_LIMIT_KEYWORDS)


def _call_with_retries(
    action: Callable[[], _T],
    description: str,
    max_attempts: int = 3,
    base_delay: float = 0.5,
) -> _T:
    """Run ``action`` until it succeeds or ``max_attempts`` calls have failed.

    Waits grow exponentially between attempts, twice as fast after a rate
    limit response, with up to ``base_delay`` seconds of jitter and a 15s
    ceiling.  The final failure is re-raised as :class:`MarketDataError`.
    """

    for attempt in range(1, max_attempts + 1):
        try:
            return action()
        except Exception as exc:
            throttled = _is_rate_limit_error(exc)
            logger.warning(
                "%s: attempt %d/%d failed%s: %s",
                description,
                attempt,
                max_attempts,
                " (rate limited)" if throttled else "",
                exc,
            )
            if attempt == max_attempts:
                raise MarketDataError(f"Failed to {description}: {exc}") from exc
            growth = 2.0 if throttled else 1.5
            wait = max(base_delay, 0.1) * growth ** attempt
            time.sleep(min(wait + random.uniform(0.0, base_delay), 15.0))
    raise MarketDataError(f"Failed to {description}: no attempts made")


def build_client(settings: ExchangeSettings) -> Client:
    if settings.api_key and settings.api_secret:
        return Client(settings.api_key, settings.api_secret, testnet=settings.testnet)
    return Client(testnet=settings.testnet)


class BinanceFuturesMarket:
    """Read-only market and account access for USDⓈ-M futures."""

    def __init__(self, client: Any, *, timeout: float = 10.0, max_attempts: int = 3) -> None:
        self.client = client
        self.timeout = float(timeout)
        self.max_attempts = int(max_attempts)

    # ------------------------------------------------------------------
    # Blocking calls
    # ------------------------------------------------------------------
    def fetch_candles(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        """Return ``limit - 1`` closed candles (the newest one is dropped)."""

        raw = _call_with_retries(
            lambda: self.client.futures_klines(symbol=symbol, interval=interval, limit=int(limit)),
            f"fetch {interval} klines for {symbol}",
            self.max_attempts,
        )
        if not isinstance(raw, list):
            raise MarketDataError(f"Invalid kline payload for {symbol}: {type(raw).__name__}")
        return closed_candles(klines_to_frame(raw))

    def get_price(self, symbol: str) -> float:
        data = _call_with_retries(
            lambda: self.client.futures_symbol_ticker(symbol=symbol),
            f"fetch price for {symbol}",
            self.max_attempts,
        )
        try:
            price = float(data["price"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MarketDataError(f"Invalid price payload for {symbol}: {data}") from exc
        if not math.isfinite(price) or price <= 0:
            raise MarketDataError(f"Invalid price for {symbol}: {price}")
        return price

    def get_24h_tickers(self) -> List[Dict[str, Any]]:
        data = _call_with_retries(self.client.futures_ticker, "fetch 24h tickers", self.max_attempts)
        return list(data or [])

    def get_positions(self) -> List[Dict[str, Any]]:
        """Return exchange positions with a non-zero amount."""

        data = _call_with_retries(
            self.client.futures_position_information, "fetch positions", self.max_attempts
        )
        positions = []
        for item in data or []:
            try:
                amount = float(item.get("positionAmt", 0))
            except (TypeError, ValueError):
                continue
            if amount == 0:
                continue
            positions.append(
                {
                    "symbol": item.get("symbol"),
                    "positionAmt": amount,
                    "entryPrice": float(item.get("entryPrice", 0) or 0),
                    "updateTime": int(item.get("updateTime", 0) or 0),
                }
            )
        return positions

    def get_usdt_balance(self) -> float:
        account = _call_with_retries(self.client.futures_account, "fetch account", self.max_attempts)
        for asset in account.get("assets", []):
            if asset.get("asset") == "USDT":
                return float(asset.get("availableBalance", 0) or 0)
        raise MarketDataError("USDT balance unavailable")

    def get_precisions(self) -> Dict[str, SymbolPrecision]:
        info = _call_with_retries(
            self.client.futures_exchange_info, "fetch exchange info", self.max_attempts
        )
        table: Dict[str, SymbolPrecision] = {}
        for sym in info.get("symbols", []):
            tick = 0.0
            for flt in sym.get("filters", []):
                if flt.get("filterType") == "PRICE_FILTER":
                    tick = float(flt.get("tickSize", 0) or 0)
            table[sym["symbol"]] = SymbolPrecision(
                price_precision=int(sym.get("pricePrecision", 4)),
                quantity_precision=int(sym.get("quantityPrecision", 3)),
                tick_size=tick,
            )
        return table

    # ------------------------------------------------------------------
    # Async wrappers
    # ------------------------------------------------------------------
    async def _run(self, fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
        loop = asyncio.get_running_loop()
        call = functools.partial(fn, *args, **kwargs)
        return await asyncio.wait_for(loop.run_in_executor(None, call), timeout=self.timeout)

    async def fetch_candles_async(self, symbol: str, interval: str, limit: int) -> Optional[pd.DataFrame]:
        """Closed candles, or ``None`` when the fetch failed or timed out."""

        try:
            return await self._run(self.fetch_candles, symbol, interval, limit)
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching %s %s candles; skipping this cycle", symbol, interval)
        except MarketDataError as exc:
            logger.warning("%s candles unavailable: %s", symbol, exc)
        return None

    async def get_price_async(self, symbol: str) -> float:
        return await self._run(self.get_price, symbol)

    async def get_24h_tickers_async(self) -> List[Dict[str, Any]]:
        return await self._run(self.get_24h_tickers)

    async def get_positions_async(self) -> List[Dict[str, Any]]:
        return await self._run(self.get_positions)

    async def get_usdt_balance_async(self) -> float:
        return await self._run(self.get_usdt_balance)


def calc_order_quantity(
    balance: float,
    ratio: float,
    leverage: int,
    price: float,
    quantity_precision: int = 3,
) -> float:
    """Contracts for ``balance * ratio`` margin at ``leverage`` and ``price``."""

    if price <= 0 or balance <= 0:
        return 0.0
    qty = (balance * ratio * leverage) / price
    factor = 10 ** max(0, int(quantity_precision))
    return math.floor(qty * factor) / factor


class FuturesOrderGateway:
    """Order submission; raises :class:`OrderSubmissionError` on failure."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def _submit(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.client.futures_create_order(**params)
        except Exception as exc:
            logger.error("Order rejected %s: %s", params, exc)
            raise OrderSubmissionError(str(exc), params) from exc
        logger.info("Order accepted %s -> %s", params, response)
        return response

    def market_order(self, symbol: str, side: str, quantity: float, *, reduce_only: bool = False) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": "MARKET",
            "quantity": quantity,
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        return self._submit(params)

    def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        try:
            return self.client.futures_change_leverage(symbol=symbol, leverage=int(leverage))
        except Exception as exc:
            raise OrderSubmissionError(str(exc), {"symbol": symbol, "leverage": leverage}) from exc

    def stop_loss_order(self, symbol: str, side: str, stop_price: float) -> Dict[str, Any]:
        return self._submit(
            {
                "symbol": symbol,
                "side": side,
                "type": "STOP_MARKET",
                "stopPrice": stop_price,
                "closePosition": "true",
                "workingType": "MARK_PRICE",
            }
        )

    def take_profit_order(self, symbol: str, side: str, stop_price: float) -> Dict[str, Any]:
        return self._submit(
            {
                "symbol": symbol,
                "side": side,
                "type": "TAKE_PROFIT_MARKET",
                "stopPrice": stop_price,
                "closePosition": "true",
                "workingType": "MARK_PRICE",
            }
        )


class SymbolUniverse:
    """Cached trading universe and precision table backed by JSON files."""

    def __init__(self, universe_file: str, precision_file: str, *, size: int = 50) -> None:
        self.universe_file = universe_file
        self.precision_file = precision_file
        self.size = int(size)

    @staticmethod
    def select_top(tickers: Iterable[Mapping[str, Any]], size: int) -> List[str]:
        """USDT perpetuals sorted by 24h quote volume, highest first."""

        eligible = [
            t for t in tickers
            if str(t.get("symbol", "")).endswith("USDT") and "_" not in str(t.get("symbol", ""))
        ]

        def _volume(t: Mapping[str, Any]) -> float:
            try:
                return float(t.get("quoteVolume", 0))
            except (TypeError, ValueError):
                return 0.0

        eligible.sort(key=_volume, reverse=True)
        return [str(t["symbol"]) for t in eligible[:size]]

    def refresh(self, tickers: Iterable[Mapping[str, Any]]) -> List[str]:
        symbols = self.select_top(tickers, self.size)
        dump_json(self.universe_file, {"symbols": symbols, "updated_at": time.time()})
        logger.info("Cached top %d symbols", len(symbols))
        return symbols

    def symbols(self) -> List[str]:
        data = load_json(self.universe_file, {})
        if isinstance(data, list):
            return [str(s) for s in data]
        return [str(s) for s in data.get("symbols", [])]

    def save_precisions(self, table: Mapping[str, SymbolPrecision]) -> None:
        dump_json(self.precision_file, {sym: p.to_dict() for sym, p in table.items()})

    def precision(self, symbol: str) -> SymbolPrecision:
        data = load_json(self.precision_file, {})
        entry = data.get(symbol) if isinstance(data, dict) else None
        if not entry:
            return DEFAULT_PRECISION
        return SymbolPrecision.from_dict(entry)


__all__ = [
    "MarketDataError",
    "OrderSubmissionError",
    "SymbolPrecision",
    "DEFAULT_PRECISION",
    "klines_to_frame",
    "build_client",
    "BinanceFuturesMarket",
    "FuturesOrderGateway",
    "SymbolUniverse",
    "calc_order_quantity",
]
