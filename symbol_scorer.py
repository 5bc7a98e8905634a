"""
Multi-factor scoring used to rank the symbol universe.

Each symbol gets an integer ``long_score`` and ``short_score`` (0-5) from
five independent checks on the last closed candle:

* close vs VWAP
* EMA5 vs EMA13 ordering
* close vs Bollinger middle
* close beyond the outer Bollinger band
* EMA spread wider than an absolute margin

Flat symbols are excluded before scoring.  A direction is chosen only
when its score reaches ``min_score``; longs win ties.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from config import BollingerSettings, ScoringSettings
from flat_filter import is_flat_market
from indicators import bollinger_bands, ema, vwap
from log_utils import setup_logger
from signal_detector import LONG, SHORT

logger = setup_logger(__name__)


@dataclass(frozen=True)
class ScoredSymbol:
    symbol: str
    direction: str
    score: int
    long_score: int = 0
    short_score: int = 0


def factor_scores(
    candles: pd.DataFrame,
    scoring: ScoringSettings,
    boll_cfg: BollingerSettings,
) -> Optional[Tuple[int, int]]:
    """Return ``(long_score, short_score)`` or ``None`` if indicators are missing."""

    close = candles["close"].astype(float)
    fast = ema(close, scoring.fast_ema)
    slow = ema(close, scoring.slow_ema)
    bands = bollinger_bands(close, boll_cfg.period, boll_cfg.std_dev)
    vw = vwap(candles["high"], candles["low"], close, candles["volume"])

    aligned = pd.concat(
        [close.rename("close"), fast.rename("fast"), slow.rename("slow"), bands, vw],
        axis=1,
    ).dropna()
    if len(aligned) < 2:
        return None

    last = aligned.iloc[-1]
    spread = last["fast"] - last["slow"]
    margin = scoring.ema_spread_margin

    long_checks = (
        last["close"] > last["vwap"],
        last["fast"] > last["slow"],
        last["close"] > last["middle"],
        last["close"] > last["upper"],
        spread > margin,
    )
    short_checks = (
        last["close"] < last["vwap"],
        last["fast"] < last["slow"],
        last["close"] < last["middle"],
        last["close"] < last["lower"],
        -spread > margin,
    )
    return sum(bool(c) for c in long_checks), sum(bool(c) for c in short_checks)


def score_symbol(
    symbol: str,
    candles: Optional[pd.DataFrame],
    scoring: ScoringSettings,
    boll_cfg: BollingerSettings,
) -> Optional[ScoredSymbol]:
    """Score one symbol from its closed candles; ``None`` means no candidate."""

    if candles is None or len(candles) < scoring.min_candles:
        return None

    if is_flat_market(
        candles["close"],
        candles["high"],
        candles["low"],
        scoring.flat_range_threshold,
        scoring.flat_window,
    ):
        logger.info("%s excluded by flat-market filter", symbol)
        return None

    scores = factor_scores(candles, scoring, boll_cfg)
    if scores is None:
        logger.info("%s: not enough indicator history to score", symbol)
        return None
    long_score, short_score = scores

    direction = None
    score = 0
    if long_score >= scoring.min_score and long_score >= short_score:
        direction, score = LONG, long_score
    elif short_score >= scoring.min_score:
        direction, score = SHORT, short_score

    logger.info(
        "%s: side=%s, longScore=%d, shortScore=%d", symbol, direction, long_score, short_score
    )
    if direction is None:
        return None
    return ScoredSymbol(symbol, direction, score, long_score, short_score)


def rank_symbols(
    results: Iterable[Optional[ScoredSymbol]], top_n: int
) -> Tuple[List[ScoredSymbol], List[ScoredSymbol]]:
    """Split scored symbols into the top ``top_n`` longs and shorts.

    Sorting is by descending score and stable, so equal scores keep the
    universe order.
    """

    longs = [r for r in results if r is not None and r.direction == LONG]
    shorts = [r for r in results if r is not None and r.direction == SHORT]
    top_long = sorted(longs, key=lambda r: r.score, reverse=True)[:top_n]
    top_short = sorted(shorts, key=lambda r: r.score, reverse=True)[:top_n]
    return top_long, top_short


CandleFetcher = Callable[[str], Awaitable[Optional[pd.DataFrame]]]


async def select_top_symbols(
    symbols: Sequence[str],
    fetch_candles: CandleFetcher,
    scoring: ScoringSettings,
    boll_cfg: BollingerSettings,
    *,
    max_concurrency: int = 5,
) -> Tuple[List[ScoredSymbol], List[ScoredSymbol]]:
    """Score every symbol concurrently and return the ranked top lists.

    A failure for one symbol is logged and treated as "no candidate"; it
    never cancels the others.
    """

    sem = asyncio.Semaphore(max(1, max_concurrency))

    async def run_one(sym: str) -> Optional[ScoredSymbol]:
        async with sem:
            try:
                candles = await fetch_candles(sym)
                return score_symbol(sym, candles, scoring, boll_cfg)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("%s scoring failed: %s", sym, exc)
                return None

    results = await asyncio.gather(*(run_one(sym) for sym in symbols))
    top_long, top_short = rank_symbols(results, scoring.selection_count)
    logger.info(
        "Top longs: %s | Top shorts: %s",
        [(r.symbol, r.score) for r in top_long],
        [(r.symbol, r.score) for r in top_short],
    )
    return top_long, top_short


__all__ = [
    "ScoredSymbol",
    "factor_scores",
    "score_symbol",
    "rank_symbols",
    "select_top_symbols",
]
