"""
Exit decisions for open positions.

Every cycle each ledger position is run through ``EXIT_RULES`` in order
and the first rule that returns a reason closes the position:

1. stop-loss: the position is losing;
2. breakdown: in profit but price fell back through the EMA21 or the
   Bollinger middle that the entry was above (mirrored for shorts);
3. sideways: in profit and the market has gone quiet;
4. volatility decay: in profit and candle bodies have shrunk;
5. time decay: held long enough without reaching the profit target.

Closing submits a reduce-only market order on the opposite side for the
full amount; the ledger entry is removed only once that order went
through.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from config import BollingerSettings, EngineSettings, ExitSettings, SidewaysSettings
from exchange import OrderSubmissionError
from indicators import bollinger_bands, ema
from log_utils import setup_logger
from notifier import format_details, send_telegram_message
from position_ledger import BUY, SELL, Position, PositionLedger
from sideways import SidewaysState, detect_sideways

logger = setup_logger(__name__)


@dataclass(frozen=True)
class ExitContext:
    position: Position
    current_price: float
    pnl_rate: float
    held_minutes: float
    current_ema: Optional[float]
    current_boll_middle: Optional[float]
    sideways: SidewaysState
    candles: pd.DataFrame
    settings: ExitSettings
    sideways_enabled: bool = True


@dataclass(frozen=True)
class ExitDecision:
    symbol: str
    should_close: bool
    rule: str = ""
    reason: str = ""
    pnl_rate: float = 0.0


def pnl_rate(side: str, entry: float, price: float) -> float:
    """Unrealised profit as a fraction of ``entry`` (positive means profit)."""

    if entry <= 0:
        raise ValueError("entry price must be positive")
    if side == BUY:
        return (price - entry) / entry
    if side == SELL:
        return (entry - price) / entry
    raise ValueError(f"unknown side {side!r}")


def stop_loss_rule(ctx: ExitContext) -> Optional[str]:
    if ctx.pnl_rate < 0:
        return "stop-loss"
    return None


def breakdown_rule(ctx: ExitContext) -> Optional[str]:
    if ctx.pnl_rate <= 0:
        return None
    pos = ctx.position
    price = ctx.current_price
    ema_break = boll_break = False
    if pos.side == BUY:
        if pos.entry_ema is not None and ctx.current_ema is not None:
            ema_break = pos.entry_price > pos.entry_ema and price < ctx.current_ema
        if pos.entry_boll is not None and ctx.current_boll_middle is not None:
            boll_break = pos.entry_price > pos.entry_boll and price < ctx.current_boll_middle
    else:
        if pos.entry_ema is not None and ctx.current_ema is not None:
            ema_break = pos.entry_price < pos.entry_ema and price > ctx.current_ema
        if pos.entry_boll is not None and ctx.current_boll_middle is not None:
            boll_break = pos.entry_price < pos.entry_boll and price > ctx.current_boll_middle
    if ema_break or boll_break:
        return "breakdown take-profit"
    return None


def sideways_rule(ctx: ExitContext) -> Optional[str]:
    if ctx.pnl_rate <= 0 or not ctx.sideways_enabled:
        return None
    if ctx.sideways.sideways:
        return ctx.sideways.reason
    return None


def volatility_decay_rule(ctx: ExitContext) -> Optional[str]:
    if ctx.pnl_rate <= 0:
        return None
    window = ctx.settings.volatility_window
    recent = ctx.candles.tail(window)
    if len(recent) < window:
        return None
    avg_close = float(recent["close"].mean())
    if avg_close <= 0:
        return None
    body = float((recent["close"] - recent["open"]).abs().mean())
    if body / avg_close < ctx.settings.volatility_threshold:
        return "volatility compressed"
    return None


def time_decay_rule(ctx: ExitContext) -> Optional[str]:
    """Both holding-time gates are checked; every gate that fires is reported."""

    cfg = ctx.settings
    held = ctx.held_minutes
    reasons = []
    if held > cfg.min_holding_minutes and ctx.pnl_rate < cfg.min_profit_rate:
        reasons.append(f"time-decay: held {held:.0f} min below {cfg.min_profit_rate:.2%}")
    if held > cfg.quick_exit_minutes and ctx.pnl_rate < cfg.quick_exit_profit_rate:
        reasons.append(f"quick-exit: held {held:.0f} min below {cfg.quick_exit_profit_rate:.2%}")
    return "; ".join(reasons) or None


ExitRule = Callable[[ExitContext], Optional[str]]

EXIT_RULES: Sequence[Tuple[str, ExitRule]] = (
    ("stop_loss", stop_loss_rule),
    ("breakdown", breakdown_rule),
    ("sideways", sideways_rule),
    ("volatility_decay", volatility_decay_rule),
    ("time_decay", time_decay_rule),
)


def evaluate_exit(ctx: ExitContext, rules: Sequence[Tuple[str, ExitRule]] = EXIT_RULES) -> ExitDecision:
    """Run ``rules`` in order; the first rule with a reason wins."""

    symbol = ctx.position.symbol
    for name, rule in rules:
        reason = rule(ctx)
        if reason:
            return ExitDecision(symbol, True, name, reason, ctx.pnl_rate)
    return ExitDecision(symbol, False, pnl_rate=ctx.pnl_rate)


def build_exit_context(
    position: Position,
    candles: pd.DataFrame,
    exit_cfg: ExitSettings,
    sideways_cfg: SidewaysSettings,
    boll_cfg: BollingerSettings,
    *,
    now: Optional[float] = None,
) -> ExitContext:
    close = candles["close"].astype(float)
    current_price = float(close.iloc[-1])
    ema_values = ema(close, exit_cfg.ema_period).dropna()
    bands = bollinger_bands(close, boll_cfg.period, boll_cfg.std_dev)
    middle = bands["middle"].dropna()
    if sideways_cfg.enabled:
        state = detect_sideways(close, bands, sideways_cfg)
    else:
        state = SidewaysState(False)
    return ExitContext(
        position=position,
        current_price=current_price,
        pnl_rate=pnl_rate(position.side, position.entry_price, current_price),
        held_minutes=position.held_minutes(now),
        current_ema=float(ema_values.iloc[-1]) if not ema_values.empty else None,
        current_boll_middle=float(middle.iloc[-1]) if not middle.empty else None,
        sideways=state,
        candles=candles,
        settings=exit_cfg,
        sideways_enabled=sideways_cfg.enabled,
    )


async def _close_position(
    position: Position,
    decision: ExitDecision,
    ledger: PositionLedger,
    orders: Any,
    notify: Callable[[str], Any],
) -> bool:
    close_side = SELL if position.side == BUY else BUY
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(
            None,
            functools.partial(
                orders.market_order, position.symbol, close_side, position.quantity, reduce_only=True
            ),
        )
    except OrderSubmissionError as exc:
        logger.error(
            "%s close order failed (%s, params %s): %s", position.symbol, decision.reason, exc.params, exc
        )
        notify(f"⚠️ {position.symbol} close failed: {exc}")
        return False
    notify(
        format_details(
            f"✅ {position.symbol} closed: {decision.reason}",
            {"side": position.side, "quantity": position.quantity, "pnl": f"{decision.pnl_rate:.2%}"},
        )
    )
    ledger.remove(position.symbol)
    return True


async def run_exit_cycle(
    ledger: PositionLedger,
    market: Any,
    orders: Any,
    settings: EngineSettings,
    now: Optional[float] = None,
    *,
    notify: Callable[[str], Any] = send_telegram_message,
) -> List[ExitDecision]:
    """Evaluate every ledger position once and close the ones that should go."""

    ts = float(now if now is not None else time.time())
    positions: Dict[str, Position] = ledger.snapshot()
    if not positions:
        return []
    semaphore = asyncio.Semaphore(max(1, settings.exchange.max_concurrency))

    async def _evaluate(position: Position) -> Optional[ExitDecision]:
        symbol = position.symbol
        async with semaphore:
            try:
                candles = await market.fetch_candles_async(
                    symbol, settings.exchange.interval, settings.exit.candle_limit
                )
                if candles is None or len(candles) < settings.exit.min_candles:
                    logger.info("%s exit check skipped: insufficient candles", symbol)
                    return None
                ctx = build_exit_context(
                    position, candles, settings.exit, settings.sideways, settings.bollinger, now=ts
                )
                decision = evaluate_exit(ctx)
                if decision.should_close:
                    logger.info("%s exit triggered by %s: %s", symbol, decision.rule, decision.reason)
                    await _close_position(position, decision, ledger, orders, notify)
                return decision
            except Exception as exc:
                logger.exception("%s exit evaluation failed: %s", symbol, exc)
                return None

    results = await asyncio.gather(*(_evaluate(p) for p in positions.values()))
    return [r for r in results if r is not None]


__all__ = [
    "ExitContext",
    "ExitDecision",
    "EXIT_RULES",
    "pnl_rate",
    "stop_loss_rule",
    "breakdown_rule",
    "sideways_rule",
    "volatility_decay_rule",
    "time_decay_rule",
    "evaluate_exit",
    "build_exit_context",
    "run_exit_cycle",
]
