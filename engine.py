"""
Futures signal engine main loop.

One cycle does, in order:

1. classify the market regime from the full 24h ticker snapshot and
   refresh the cached trading universe;
2. reconcile the position ledger from the exchange;
3. run the exit rules over a snapshot of the ledger;
4. place stop-loss / take-profit orders still missing on any open
   position, retrying legs the exchange rejected earlier;
5. score the universe, confirm candidates with the EMA/Bollinger signal
   detector and open the top long and short picks.

Cycles never overlap: ``run_cycle`` holds an ``asyncio.Lock`` for the
whole cycle and a cycle scheduled while another is running waits for it.
"""

from __future__ import annotations

import asyncio
import functools
import sys
import time
from typing import Any, Callable, Dict, List, Optional

from config import EngineSettings, load_engine_settings, validate_settings
from exchange import (
    BinanceFuturesMarket,
    FuturesOrderGateway,
    MarketDataError,
    OrderSubmissionError,
    SymbolUniverse,
    build_client,
    calc_order_quantity,
)
from exit_engine import run_exit_cycle
from log_utils import setup_logger
from market_regime import (
    BEARISH,
    BULLISH,
    STRONG_BEARISH,
    STRONG_BULLISH,
    MarketRegime,
    classify_market_regime,
    parse_ticker_changes,
)
from notifier import format_details, send_telegram_message
from position_ledger import BUY, SELL, PositionLedger, capture_entry_indicators
from risk_pricing import setup_dynamic_orders
from signal_detector import LONG, SHORT, detect_signal
from state_manager import EngineContext, EngineState
from symbol_scorer import ScoredSymbol, select_top_symbols

logger = setup_logger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Log uncaught exceptions with stack traces."""
    if issubclass(exc_type, KeyboardInterrupt):
        return
    logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


def allowed_directions(regime: MarketRegime) -> set:
    """Entry directions permitted under ``regime``.

    A one-sided market blocks entries against it; otherwise both sides
    are allowed.
    """

    if regime.is_one_sided and regime.trend in (BULLISH, STRONG_BULLISH):
        return {LONG}
    if regime.is_one_sided and regime.trend in (BEARISH, STRONG_BEARISH):
        return {SHORT}
    return {LONG, SHORT}


class TradingEngine:
    """Wire market data, the ledger and the decision modules into cycles."""

    def __init__(
        self,
        settings: EngineSettings,
        market: Any,
        orders: Any,
        *,
        ledger: Optional[PositionLedger] = None,
        universe: Optional[SymbolUniverse] = None,
        state: Optional[EngineState] = None,
        notify: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.settings = settings
        self.market = market
        self.orders = orders
        storage = settings.storage
        self.ledger = ledger or PositionLedger(storage.position_file)
        self.universe = universe or SymbolUniverse(
            storage.universe_file, storage.precision_file, size=settings.exchange.universe_size
        )
        self.state = state or EngineState()
        if notify is None:
            notify = functools.partial(
                send_telegram_message,
                token=settings.telegram.token or None,
                chat_id=settings.telegram.chat_id or None,
                timeout=settings.telegram.timeout,
            )
        self.notify = notify
        self._cycle_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------
    async def refresh_regime(self, now: float) -> None:
        try:
            tickers = await self.market.get_24h_tickers_async()
        except (MarketDataError, asyncio.TimeoutError) as exc:
            age = self.state.snapshot().regime_age(now)
            logger.warning("24h tickers unavailable, keeping regime classified %.0fs ago: %s", age, exc)
            return
        changes = [change for _symbol, change in parse_ticker_changes(tickers)]
        regime = classify_market_regime(changes, self.settings.regime, now=now)
        self.state.publish_regime(regime, timestamp=now)
        self.universe.refresh(tickers)

    async def reconcile_positions(self, now: float) -> List[str]:
        """Sync the ledger with the exchange; return symbols tracked for the first time."""

        try:
            reported = await self.market.get_positions_async()
        except (MarketDataError, asyncio.TimeoutError) as exc:
            logger.warning("Positions unavailable, ledger left untouched: %s", exc)
            return []
        new_symbols = self.ledger.untracked_symbols(reported)
        exit_cfg = self.settings.exit
        boll_cfg = self.settings.bollinger

        async def _snapshot(symbol: str):
            candles = await self.market.fetch_candles_async(
                symbol, self.settings.exchange.interval, exit_cfg.candle_limit
            )
            return capture_entry_indicators(candles, exit_cfg.ema_period, boll_cfg.period, boll_cfg.std_dev)

        results = await asyncio.gather(*(_snapshot(s) for s in new_symbols), return_exceptions=True)
        snapshots: Dict[str, Any] = {}
        for symbol, result in zip(new_symbols, results):
            if isinstance(result, Exception):
                logger.warning("%s entry snapshot failed: %s", symbol, result)
                continue
            snapshots[symbol] = result
        self.ledger.reconcile(reported, lambda s: snapshots.get(s, (None, None)), now=now)
        return new_symbols

    async def protect_open_positions(self) -> int:
        """Place protective orders still missing for any ledger position.

        Legs the exchange accepted are recorded on the ledger entry, so a
        leg that failed is retried on the next cycle and accepted legs are
        never submitted twice.  Returns the number of positions updated.
        """

        positions = list(self.ledger.snapshot().values())
        if not positions:
            return 0
        results = await setup_dynamic_orders(
            positions,
            self.market,
            self.orders,
            self.settings.risk,
            precision_for=self.universe.precision,
            notify=self.notify,
        )
        for result in results:
            self.ledger.mark_protection(
                result.symbol, stop_placed=result.stop_placed, target_placed=result.target_placed
            )
        return len(results)

    async def _confirm(self, candidate: ScoredSymbol) -> bool:
        cfg = self.settings
        candles = await self.market.fetch_candles_async(
            candidate.symbol, cfg.exchange.interval, cfg.signal.candle_limit
        )
        signal = detect_signal(candidate.symbol, candles, cfg.ema, cfg.bollinger, cfg.signal)
        return signal.direction == candidate.direction

    async def open_position(self, candidate: ScoredSymbol, balance: float) -> bool:
        cfg = self.settings.exchange
        symbol = candidate.symbol
        side = BUY if candidate.direction == LONG else SELL
        precision = self.universe.precision(symbol)
        price = await self.market.get_price_async(symbol)
        qty = calc_order_quantity(balance, cfg.position_ratio, cfg.leverage, price, precision.quantity_precision)
        if qty <= 0:
            logger.info("%s order skipped: quantity rounds to zero", symbol)
            return False
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, functools.partial(self.orders.set_leverage, symbol, cfg.leverage))
        except OrderSubmissionError as exc:
            logger.warning("%s leverage not updated: %s", symbol, exc)
        try:
            await loop.run_in_executor(None, functools.partial(self.orders.market_order, symbol, side, qty))
        except OrderSubmissionError as exc:
            logger.error("%s entry order failed with params %s: %s", symbol, exc.params, exc)
            self.notify(f"❌ {side} {symbol} order failed: {exc}")
            return False
        self.notify(
            format_details(
                f"✅ {side} {symbol} opened",
                {"quantity": qty, "price": price, "score": candidate.score},
            )
        )
        return True

    async def open_new_positions(self, context: EngineContext) -> List[str]:
        cfg = self.settings
        held = self.ledger.snapshot()
        candidates = [s for s in self.universe.symbols() if s not in held]
        if not candidates:
            return []

        async def _fetch(symbol: str):
            return await self.market.fetch_candles_async(symbol, cfg.exchange.interval, cfg.signal.candle_limit)

        top_long, top_short = await select_top_symbols(
            candidates, _fetch, cfg.scoring, cfg.bollinger, max_concurrency=cfg.exchange.max_concurrency
        )
        allowed = allowed_directions(context.regime)
        picks = [c for c in top_long + top_short if c.direction in allowed]
        if not picks:
            return []

        confirmed = await asyncio.gather(*(self._confirm(c) for c in picks), return_exceptions=True)
        entries = []
        for candidate, ok in zip(picks, confirmed):
            if isinstance(ok, Exception):
                logger.warning("%s signal confirmation failed: %s", candidate.symbol, ok)
            elif ok:
                entries.append(candidate)
            else:
                logger.info("%s %s not confirmed by signal detector", candidate.symbol, candidate.direction)
        if not entries:
            return []

        try:
            balance = await self.market.get_usdt_balance_async()
        except (MarketDataError, asyncio.TimeoutError) as exc:
            logger.warning("Balance unavailable, no entries this cycle: %s", exc)
            return []

        opened = []
        for candidate in entries:
            try:
                if await self.open_position(candidate, balance):
                    opened.append(candidate.symbol)
            except Exception as exc:
                logger.exception("%s entry failed: %s", candidate.symbol, exc)
        return opened

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def run_cycle(self, now: Optional[float] = None) -> EngineContext:
        async with self._cycle_lock:
            ts = float(now if now is not None else time.time())
            self.state.mark_cycle_started(timestamp=ts)
            await self.refresh_regime(ts)
            context = self.state.snapshot()
            logger.info("Cycle %d started | %s", context.cycle_count, context.regime.describe())

            new_symbols = await self.reconcile_positions(ts)
            if new_symbols:
                logger.info("Tracking new positions: %s", ", ".join(new_symbols))
            await run_exit_cycle(self.ledger, self.market, self.orders, self.settings, ts, notify=self.notify)
            await self.protect_open_positions()
            opened = await self.open_new_positions(context)
            if opened:
                logger.info("Opened positions: %s", ", ".join(opened))

            self.state.mark_cycle_finished(timestamp=time.time())
            return self.state.snapshot()

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = float(interval_seconds or self.settings.cycle_seconds)
        while True:
            started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.exception("Cycle failed: %s", exc)
            remaining = interval - (time.monotonic() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)


def build_engine(settings: EngineSettings) -> TradingEngine:
    client = build_client(settings.exchange)
    market = BinanceFuturesMarket(client, timeout=settings.exchange.fetch_timeout)
    orders = FuturesOrderGateway(client)
    engine = TradingEngine(settings, market, orders)
    try:
        engine.universe.save_precisions(market.get_precisions())
    except MarketDataError as exc:
        logger.warning("Precision table not refreshed: %s", exc)
    return engine


def main() -> None:
    sys.excepthook = handle_exception
    settings = validate_settings(load_engine_settings())
    engine = build_engine(settings)
    logger.info("Starting futures signal engine (interval %s)", settings.exchange.interval)
    try:
        asyncio.run(engine.run_forever())
    except KeyboardInterrupt:
        logger.info("Engine stopped")


if __name__ == "__main__":
    main()
