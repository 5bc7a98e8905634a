"""Sideways (low-volatility consolidation) detection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

import numpy as np
import pandas as pd

from config import SidewaysSettings

INSUFFICIENT_DATA = "insufficient data"


@dataclass(frozen=True)
class SidewaysState:
    sideways: bool
    reason: str = ""
    duration_count: int = 0


def detect_sideways(
    close: Union[pd.Series, Iterable[float]],
    bands: pd.DataFrame,
    settings: SidewaysSettings,
) -> SidewaysState:
    """Return whether the trailing candles form a confirmed sideways streak.

    ``bands`` must be aligned row-for-row with ``close`` and carry
    ``upper``, ``middle`` and ``lower`` columns (NaN during warm-up).  Each
    of the last ``min_sideways_duration`` positions is judged on the
    candles strictly before it: the ``price_std_period`` closes must have a
    relative (population) standard deviation below ``price_std_threshold``
    and the ``boll_narrow_period`` band widths ``(upper - lower) / middle``
    must average below ``boll_narrow_threshold``.  Any failing position
    resets the streak.
    """

    period = settings.price_std_period
    width_period = settings.boll_narrow_period
    duration = settings.min_sideways_duration

    closes = np.asarray(list(close), dtype=float)
    upper = bands["upper"].to_numpy(dtype=float)
    middle = bands["middle"].to_numpy(dtype=float)
    lower = bands["lower"].to_numpy(dtype=float)
    if len(upper) != len(closes):
        raise ValueError("close and Bollinger bands must be aligned")

    n = len(closes)
    lookback = max(period, width_period)
    if n < lookback + duration:
        return SidewaysState(False, INSUFFICIENT_DATA, 0)
    # every row read by the trailing windows must carry bands
    first, last = n - duration - lookback, n - 1
    valid = ~(np.isnan(upper) | np.isnan(middle) | np.isnan(lower) | np.isnan(closes))
    if not valid[first:last].all():
        return SidewaysState(False, INSUFFICIENT_DATA, 0)

    widths = (upper - lower) / middle
    streak = 0
    for i in range(n - duration, n):
        window = closes[i - period : i]
        avg = float(window.mean())
        if avg == 0:
            streak = 0
            continue
        std_rate = float(window.std()) / avg
        avg_width = float(widths[i - width_period : i].mean())
        if std_rate < settings.price_std_threshold and avg_width < settings.boll_narrow_threshold:
            streak += 1
        else:
            streak = 0

    if streak >= duration:
        return SidewaysState(
            True,
            f"sideways take-profit: low volatility for {streak} candles",
            streak,
        )
    return SidewaysState(False, "", streak)


__all__ = ["INSUFFICIENT_DATA", "SidewaysState", "detect_sideways"]
