"""Flat-market pre-gate for the symbol ranking path."""

from __future__ import annotations

from typing import Iterable

import numpy as np


def is_flat_market(
    close: Iterable[float],
    high: Iterable[float],
    low: Iterable[float],
    range_threshold: float = 0.01,
    window: int = 20,
) -> bool:
    """Return True when the last ``window`` candles trade in a narrow band.

    The band is ``(max high - min low) / mean close``.  With fewer than
    ``window`` candles nothing can be said and the market is not flat.
    """

    closes = np.asarray(list(close), dtype=float)
    highs = np.asarray(list(high), dtype=float)
    lows = np.asarray(list(low), dtype=float)
    if min(len(closes), len(highs), len(lows)) < window:
        return False
    recent_close = closes[-window:]
    avg_close = float(np.mean(recent_close))
    if avg_close <= 0:
        return False
    price_range = float(np.max(highs[-window:]) - np.min(lows[-window:]))
    return price_range / avg_close < range_threshold


__all__ = ["is_flat_market"]
