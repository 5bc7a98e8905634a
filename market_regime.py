"""
Market-wide regime classification from 24h price changes.

The whole futures universe is summarised into up/down counts, the mean
24h change and the share of "significant movers" (|change| > 1%).  The
verdict is then picked in priority order:

1. more than 85% of symbols moving the same way -> ``strong_bullish`` /
   ``strong_bearish`` with confidence 95;
2. more than 70% up, mean change above +0.5% and more than 60% significant
   movers -> ``bullish`` (confidence ``min(up_ratio * 100, 90)``);
3. the bearish mirror of rule 2;
4. otherwise ``neutral`` with confidence 0.

Classification needs the complete snapshot, so callers gather every
ticker first and classify once.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple

from config import RegimeSettings
from log_utils import setup_logger

logger = setup_logger(__name__)

NEUTRAL = "neutral"
BULLISH = "bullish"
BEARISH = "bearish"
STRONG_BULLISH = "strong_bullish"
STRONG_BEARISH = "strong_bearish"


@dataclass(frozen=True)
class RegimeSummary:
    total: int = 0
    up: int = 0
    down: int = 0
    up_ratio: float = 0.0
    down_ratio: float = 0.0
    average_change: float = 0.0
    significant_movers: int = 0
    significant_ratio: float = 0.0


@dataclass(frozen=True)
class MarketRegime:
    trend: str = NEUTRAL
    confidence: float = 0.0
    is_one_sided: bool = False
    summary: RegimeSummary = field(default_factory=RegimeSummary)
    updated_at: float = 0.0

    def describe(self) -> str:
        s = self.summary
        return (
            f"Market regime: {self.trend} (confidence {self.confidence:.0f}) | "
            f"up {s.up}/{s.total}, down {s.down}/{s.total}, "
            f"avg change {s.average_change:.2f}%, significant {s.significant_movers}"
        )


def _to_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def parse_ticker_changes(tickers: Iterable[Mapping[str, Any]]) -> Sequence[Tuple[str, float]]:
    """Extract ``(symbol, priceChangePercent)`` pairs from 24h ticker payloads."""

    pairs = []
    for ticker in tickers:
        change = _to_float(ticker.get("priceChangePercent"))
        if change is None:
            continue
        pairs.append((str(ticker.get("symbol", "")), change))
    return pairs


def summarise_changes(changes: Iterable[float], significant_move: float = 1.0) -> RegimeSummary:
    values = [v for v in (_to_float(c) for c in changes) if v is not None]
    total = len(values)
    if total == 0:
        return RegimeSummary()
    up = sum(1 for v in values if v > 0)
    down = sum(1 for v in values if v < 0)
    significant = sum(1 for v in values if abs(v) > significant_move)
    return RegimeSummary(
        total=total,
        up=up,
        down=down,
        up_ratio=up / total,
        down_ratio=down / total,
        average_change=sum(values) / total,
        significant_movers=significant,
        significant_ratio=significant / total,
    )


def classify_summary(
    summary: RegimeSummary,
    settings: Optional[RegimeSettings] = None,
    *,
    now: Optional[float] = None,
) -> MarketRegime:
    cfg = settings or RegimeSettings()
    ts = float(now if now is not None else time.time())
    if summary.total == 0:
        return MarketRegime(summary=summary, updated_at=ts)

    # The one-sided override wins over the milder trend rules.
    if summary.up_ratio > cfg.strong_ratio or summary.down_ratio > cfg.strong_ratio:
        trend = STRONG_BULLISH if summary.up_ratio > summary.down_ratio else STRONG_BEARISH
        return MarketRegime(trend, cfg.strong_confidence, True, summary, ts)

    if (
        summary.up_ratio > cfg.trend_ratio
        and summary.average_change > cfg.mean_change
        and summary.significant_ratio > cfg.significant_ratio
    ):
        confidence = min(summary.up_ratio * 100, cfg.max_trend_confidence)
        return MarketRegime(BULLISH, confidence, True, summary, ts)

    if (
        summary.down_ratio > cfg.trend_ratio
        and summary.average_change < -cfg.mean_change
        and summary.significant_ratio > cfg.significant_ratio
    ):
        confidence = min(summary.down_ratio * 100, cfg.max_trend_confidence)
        return MarketRegime(BEARISH, confidence, True, summary, ts)

    return MarketRegime(NEUTRAL, 0.0, False, summary, ts)


def classify_market_regime(
    changes: Iterable[float],
    settings: Optional[RegimeSettings] = None,
    *,
    now: Optional[float] = None,
) -> MarketRegime:
    """Classify a full-universe snapshot of 24h percent changes."""

    cfg = settings or RegimeSettings()
    summary = summarise_changes(changes, cfg.significant_move)
    regime = classify_summary(summary, cfg, now=now)
    logger.info(regime.describe())
    return regime


__all__ = [
    "NEUTRAL",
    "BULLISH",
    "BEARISH",
    "STRONG_BULLISH",
    "STRONG_BEARISH",
    "RegimeSummary",
    "MarketRegime",
    "parse_ticker_changes",
    "summarise_changes",
    "classify_summary",
    "classify_market_regime",
]
