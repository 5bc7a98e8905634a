"""
Dynamic take-profit and stop-loss pricing.

Prices are derived from a trailing 15m ATR, support/resistance clusters and
the live price.  When any of the inputs cannot be gathered the module
degrades to a fixed percentage around the entry price instead of failing
the caller; the operator is told about the degraded pricing.
"""

from __future__ import annotations

import asyncio
import datetime as _dt
import functools
import math
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from config import RiskSettings
from exchange import DEFAULT_PRECISION, OrderSubmissionError, SymbolPrecision
from indicators import atr as average_true_range
from log_utils import setup_logger
from notifier import format_details, send_telegram_message

logger = setup_logger(__name__)

BUY = "BUY"
SELL = "SELL"

CLUSTER_BAND = 0.005
MAX_PRICE_DECIMALS = 10


@dataclass(frozen=True)
class DynamicPrices:
    symbol: str
    side: str
    entry_price: float
    take_profit: float
    stop_loss: float
    atr: Optional[float] = None
    support: Optional[float] = None
    resistance: Optional[float] = None
    current_price: Optional[float] = None
    fallback: bool = False

    @property
    def reward_risk_ratio(self) -> Optional[float]:
        if self.side == BUY:
            reward = self.take_profit - self.entry_price
            risk = self.entry_price - self.stop_loss
        else:
            reward = self.entry_price - self.take_profit
            risk = self.stop_loss - self.entry_price
        if risk <= 0:
            return None
        return reward / risk


def find_price_cluster(prices: Sequence[float], kind: str, band: float = CLUSTER_BAND) -> Optional[float]:
    """Return the price level with the most neighbours inside ``band``.

    ``kind="upper"`` counts values in ``[p, p * (1 + band)]`` (resistance),
    ``kind="lower"`` counts values in ``[p * (1 - band), p]`` (support).
    The level starts at the list's max (upper) or min (lower) and is only
    replaced by a strictly higher count, so ties keep the earlier level.
    """

    values = [float(p) for p in prices if p is not None and not math.isnan(float(p))]
    if not values:
        return None
    if kind not in ("upper", "lower"):
        raise ValueError(f"unknown cluster kind: {kind!r}")
    best = max(values) if kind == "upper" else min(values)
    best_count = 0
    for price in values:
        if kind == "upper":
            count = sum(1 for p in values if price <= p <= price * (1 + band))
        else:
            count = sum(1 for p in values if price * (1 - band) <= p <= price)
        if count > best_count:
            best_count = count
            best = price
    return best


def support_resistance(candles: pd.DataFrame, band: float = CLUSTER_BAND) -> Tuple[Optional[float], Optional[float]]:
    """``(support, resistance)`` from the flattened high/low/close prices."""

    if candles is None or candles.empty:
        return None, None
    prices = sorted(
        float(v)
        for v in pd.concat([candles["high"], candles["low"], candles["close"]]).dropna()
    )
    return find_price_cluster(prices, "lower", band), find_price_cluster(prices, "upper", band)


def fallback_prices(symbol: str, side: str, entry: float, settings: RiskSettings) -> DynamicPrices:
    if side == BUY:
        tp = entry * (1 + settings.fallback_take_profit)
        sl = entry * (1 - settings.fallback_stop_loss)
    else:
        tp = entry * (1 - settings.fallback_take_profit)
        sl = entry * (1 + settings.fallback_stop_loss)
    return DynamicPrices(symbol, side, entry, tp, sl, fallback=True)


def compute_dynamic_prices(
    side: str,
    entry: float,
    atr: float,
    support: Optional[float],
    resistance: Optional[float],
    current: float,
    settings: Optional[RiskSettings] = None,
    *,
    symbol: str = "",
) -> DynamicPrices:
    """Pure pricing step for one position."""

    cfg = settings or RiskSettings()
    if side not in (BUY, SELL):
        raise ValueError(f"side must be BUY or SELL, got {side!r}")
    dist = cfg.min_distance

    if side == BUY:
        tp = entry + atr * cfg.take_profit_atr
        sl = entry - atr * cfg.stop_loss_atr
        if resistance is not None:
            tp = min(tp, resistance * (1 - cfg.sr_buffer))
        if support is not None:
            sl = max(sl, support * (1 + cfg.sr_buffer))
        tp = max(tp, current * (1 + dist), entry * (1 + dist))
        sl = min(sl, current * (1 - dist), entry * (1 - dist))
        risk = entry - sl
        if risk > 0 and (tp - entry) / risk < cfg.min_reward_risk:
            tp = entry + risk * cfg.min_reward_risk
        if tp <= entry:
            tp = entry * (1 + cfg.sanity_fallback)
        if sl >= entry:
            sl = entry * (1 - cfg.sanity_fallback)
    else:
        tp = entry - atr * cfg.take_profit_atr
        sl = entry + atr * cfg.stop_loss_atr
        if support is not None:
            tp = max(tp, support * (1 + cfg.sr_buffer))
        if resistance is not None:
            sl = min(sl, resistance * (1 - cfg.sr_buffer))
        tp = min(tp, current * (1 - dist), entry * (1 - dist))
        sl = max(sl, current * (1 + dist), entry * (1 + dist))
        risk = sl - entry
        if risk > 0 and (entry - tp) / risk < cfg.min_reward_risk:
            tp = entry - risk * cfg.min_reward_risk
        if tp >= entry:
            tp = entry * (1 - cfg.sanity_fallback)
        if sl <= entry:
            sl = entry * (1 + cfg.sanity_fallback)

    return DynamicPrices(
        symbol=symbol,
        side=side,
        entry_price=entry,
        take_profit=tp,
        stop_loss=sl,
        atr=atr,
        support=support,
        resistance=resistance,
        current_price=current,
    )


def adjust_to_live_price(prices: DynamicPrices, current: float, buffer: float = 0.005) -> DynamicPrices:
    """Push any side already crossed by ``current`` to ``buffer`` beyond it."""

    tp, sl = prices.take_profit, prices.stop_loss
    if prices.side == BUY:
        if sl >= current:
            sl = current * (1 - buffer)
        if tp <= current:
            tp = current * (1 + buffer)
    else:
        if sl <= current:
            sl = current * (1 + buffer)
        if tp >= current:
            tp = current * (1 - buffer)
    if (tp, sl) != (prices.take_profit, prices.stop_loss):
        logger.info(
            "%s %s prices adjusted to live price %s: TP %s -> %s, SL %s -> %s",
            prices.symbol, prices.side, current, prices.take_profit, tp, prices.stop_loss, sl,
        )
    return replace(prices, take_profit=tp, stop_loss=sl, current_price=current)


def round_price(price: float, precision: SymbolPrecision = DEFAULT_PRECISION) -> float:
    if precision.tick_size and precision.tick_size > 0:
        ticks = round(price / precision.tick_size)
        return round(ticks * precision.tick_size, precision.price_precision)
    return round(price, precision.price_precision)


def _levels_ordered(side: str, entry: float, take_profit: float, stop_loss: float) -> bool:
    if side == BUY:
        return stop_loss < entry < take_profit
    return take_profit < entry < stop_loss


def round_levels(
    prices: DynamicPrices,
    precision: SymbolPrecision = DEFAULT_PRECISION,
    fallback_rate: float = 0.02,
) -> DynamicPrices:
    """Round both trigger prices, keeping them on their side of the entry.

    A coarse grid can collapse a level onto the entry.  When that happens
    the ``fallback_rate`` levels are tried on the same grid, then the
    original levels with extra decimals up to ``MAX_PRICE_DECIMALS``.
    """

    side, entry = prices.side, prices.entry_price
    tp = round_price(prices.take_profit, precision)
    sl = round_price(prices.stop_loss, precision)
    if _levels_ordered(side, entry, tp, sl):
        return replace(prices, take_profit=tp, stop_loss=sl)

    sign = 1 if side == BUY else -1
    tp = round_price(entry * (1 + sign * fallback_rate), precision)
    sl = round_price(entry * (1 - sign * fallback_rate), precision)
    if _levels_ordered(side, entry, tp, sl):
        logger.warning("%s levels collapsed onto entry %s after rounding; using ±%.1f%%",
                       prices.symbol, entry, fallback_rate * 100)
        return replace(prices, take_profit=tp, stop_loss=sl)

    for decimals in range(precision.price_precision + 1, MAX_PRICE_DECIMALS + 1):
        finer = SymbolPrecision(decimals, precision.quantity_precision)
        tp = round_price(prices.take_profit, finer)
        sl = round_price(prices.stop_loss, finer)
        if _levels_ordered(side, entry, tp, sl):
            logger.warning("%s price grid too coarse for entry %s; rounded to %d decimals",
                           prices.symbol, entry, decimals)
            return replace(prices, take_profit=tp, stop_loss=sl)
    logger.warning("%s levels left unrounded for entry %s", prices.symbol, entry)
    return prices


def _parse_hhmm(value: str) -> _dt.time:
    hours, minutes = value.strip().split(":")
    return _dt.time(int(hours), int(minutes))


def in_time_ranges(now: _dt.datetime, ranges: Iterable[Tuple[str, str]]) -> bool:
    """True when ``now`` falls in any ``("HH:MM", "HH:MM")`` range (inclusive).

    No configured ranges means always allowed; a range whose end precedes
    its start wraps past midnight.
    """

    ranges = list(ranges or ())
    if not ranges:
        return True
    current = now.time().replace(second=0, microsecond=0)
    for start_s, end_s in ranges:
        start, end = _parse_hhmm(start_s), _parse_hhmm(end_s)
        if start <= end:
            if start <= current <= end:
                return True
        elif current >= start or current <= end:
            return True
    return False


async def calculate_dynamic_prices(
    symbol: str,
    side: str,
    entry: float,
    market: Any,
    settings: Optional[RiskSettings] = None,
    precision: SymbolPrecision = DEFAULT_PRECISION,
    *,
    notify: Callable[[str], Any] = send_telegram_message,
) -> DynamicPrices:
    """Gather ATR, support/resistance and the live price, then price the pair.

    ``market`` provides ``fetch_candles_async(symbol, interval, limit)``
    returning closed candles (or ``None``) and ``get_price_async(symbol)``.
    """

    cfg = settings or RiskSettings()
    try:
        atr_candles, sr_candles, current = await asyncio.gather(
            market.fetch_candles_async(symbol, cfg.atr_interval, cfg.atr_period + 2),
            market.fetch_candles_async(symbol, cfg.atr_interval, cfg.sr_lookback + 1),
            market.get_price_async(symbol),
        )
        if atr_candles is None or sr_candles is None:
            raise ValueError("candles unavailable")
        atr_value = average_true_range(
            atr_candles["high"], atr_candles["low"], atr_candles["close"], cfg.atr_period
        )
        if atr_value is None or not math.isfinite(atr_value):
            raise ValueError(f"ATR needs {cfg.atr_period + 1} closed candles")
        support, resistance = support_resistance(sr_candles.tail(cfg.sr_lookback), cfg.sr_band)
        current = float(current)
    except Exception as exc:
        logger.warning("%s dynamic pricing fell back to fixed percentages: %s", symbol, exc)
        prices = fallback_prices(symbol, side, entry, cfg)
        notify(
            format_details(
                f"⚠️ {symbol} dynamic pricing unavailable, using fixed levels",
                {"reason": str(exc), "take profit": prices.take_profit, "stop loss": prices.stop_loss},
            )
        )
        return round_levels(prices, precision, cfg.sanity_fallback)

    prices = compute_dynamic_prices(side, entry, atr_value, support, resistance, current, cfg, symbol=symbol)
    prices = adjust_to_live_price(prices, current, cfg.live_price_buffer)
    return round_levels(prices, precision, cfg.sanity_fallback)


@dataclass(frozen=True)
class ProtectionResult:
    """Trigger orders accepted by the exchange for one position in one pass."""

    symbol: str
    prices: Optional[DynamicPrices]
    stop_placed: bool = False
    target_placed: bool = False


async def setup_dynamic_orders(
    positions: Iterable[Any],
    market: Any,
    orders: Any,
    settings: Optional[RiskSettings] = None,
    *,
    precision_for: Callable[[str], SymbolPrecision] = lambda _symbol: DEFAULT_PRECISION,
    now: Optional[_dt.datetime] = None,
    notify: Callable[[str], Any] = send_telegram_message,
) -> List[ProtectionResult]:
    """Place the missing stop-loss and take-profit trigger orders.

    Each position needs ``symbol``, ``side`` and ``entry_price``; optional
    ``stop_placed`` / ``target_placed`` flags mark legs already on the
    exchange, which are not submitted again.  Failures for one symbol are
    logged with the full order parameters and reported to the operator;
    the remaining positions are still processed.  Returns one result per
    position with at least one leg accepted in this pass.
    """

    cfg = settings or RiskSettings()
    positions = list(positions)
    if not positions:
        logger.info("No open positions; skipping dynamic orders")
        return []
    moment = now or _dt.datetime.now()
    take_profit_allowed = cfg.enable_take_profit and in_time_ranges(moment, cfg.take_profit_time_ranges)
    loop = asyncio.get_running_loop()
    results: List[ProtectionResult] = []

    for position in positions:
        symbol = position.symbol
        need_stop = cfg.enable_stop_loss and not getattr(position, "stop_placed", False)
        need_target = take_profit_allowed and not getattr(position, "target_placed", False)
        if not (need_stop or need_target):
            continue
        close_side = SELL if position.side == BUY else BUY
        prices = None
        stop_done = target_done = False
        try:
            prices = await calculate_dynamic_prices(
                symbol,
                position.side,
                float(position.entry_price),
                market,
                cfg,
                precision_for(symbol),
                notify=notify,
            )
            if need_stop:
                await loop.run_in_executor(
                    None, functools.partial(orders.stop_loss_order, symbol, close_side, prices.stop_loss)
                )
                stop_done = True
                logger.info("%s stop-loss set at %s", symbol, prices.stop_loss)
            if need_target:
                await loop.run_in_executor(
                    None, functools.partial(orders.take_profit_order, symbol, close_side, prices.take_profit)
                )
                target_done = True
                logger.info("%s take-profit set at %s", symbol, prices.take_profit)
            rr = prices.reward_risk_ratio
            notify(
                format_details(
                    f"📊 {symbol} dynamic orders",
                    {
                        "entry": prices.entry_price,
                        "stop loss": prices.stop_loss if need_stop else None,
                        "take profit": prices.take_profit if need_target else None,
                        "reward/risk": f"{rr:.2f}:1" if rr is not None else "N/A",
                    },
                )
            )
        except OrderSubmissionError as exc:
            logger.error("%s dynamic order failed with params %s: %s", symbol, exc.params, exc)
            notify(f"⚠️ {symbol} dynamic order failed: {exc}")
        except Exception as exc:
            logger.exception("%s dynamic order setup failed: %s", symbol, exc)
            notify(f"⚠️ {symbol} dynamic order failed: {exc}")
        if stop_done or target_done:
            results.append(ProtectionResult(symbol, prices, stop_done, target_done))
    return results


__all__ = [
    "BUY",
    "SELL",
    "DynamicPrices",
    "ProtectionResult",
    "find_price_cluster",
    "support_resistance",
    "fallback_prices",
    "compute_dynamic_prices",
    "adjust_to_live_price",
    "round_price",
    "round_levels",
    "in_time_ranges",
    "calculate_dynamic_prices",
    "setup_dynamic_orders",
]
