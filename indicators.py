"""
Technical indicators used by the signal, scoring and risk modules.

All functions are pure: they take pandas Series (or anything convertible
to one) and return Series aligned to the input index.  Warm-up rows are
left as NaN rather than filled with zeros, so callers must drop NaNs and
index by offset from the end instead of by absolute position.

Functions
---------

* ``ema(close, period)`` – exponential moving average (``ta``).
* ``bollinger_bands(close, period, std_dev)`` – upper/middle/lower bands
  (``ta``), population standard deviation.
* ``vwap(high, low, close, volume)`` – cumulative volume weighted average
  price from the typical price.
* ``true_range`` / ``atr`` – true range and its simple mean over the
  trailing ``period`` candles.
* ``closed_candles(df)`` – drop the final, possibly still open, candle.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

import numpy as np
import pandas as pd
from ta.trend import EMAIndicator
from ta.volatility import BollingerBands

SeriesLike = Union[pd.Series, pd.DataFrame, Iterable[float]]

OHLCV_COLUMNS = ("open", "high", "low", "close", "volume")


def _ensure_series(data: SeriesLike, name: str) -> pd.Series:
    """Return ``data`` as a one-dimensional float :class:`pandas.Series`.

    Single-column DataFrames (``df[["close"]]``) are flattened; a DataFrame
    with several columns must contain a column called ``name``.
    """

    if isinstance(data, pd.Series):
        return data.astype(float)
    if isinstance(data, pd.DataFrame):
        if name in data.columns:
            return data[name].astype(float)
        if data.shape[1] == 1:
            series = data.iloc[:, 0]
            if series.name is None:
                series = series.rename(name)
            return series.astype(float)
        raise ValueError(
            f"DataFrame input for '{name}' must contain a '{name}' column or"
            " have exactly one column"
        )
    return pd.Series(list(data), name=name, dtype=float)


def closed_candles(df: pd.DataFrame) -> pd.DataFrame:
    """Return ``df`` without its final row (the candle that may still be open)."""

    if df is None or df.empty:
        return pd.DataFrame(columns=list(OHLCV_COLUMNS))
    return df.iloc[:-1]


def ema(close: SeriesLike, period: int) -> pd.Series:
    series = _ensure_series(close, "close")
    return EMAIndicator(series, window=int(period), fillna=False).ema_indicator()


def bollinger_bands(close: SeriesLike, period: int = 20, std_dev: float = 2.0) -> pd.DataFrame:
    """Return a DataFrame with ``upper``, ``middle`` and ``lower`` columns."""

    series = _ensure_series(close, "close")
    bb = BollingerBands(series, window=int(period), window_dev=std_dev, fillna=False)
    return pd.DataFrame(
        {
            "upper": bb.bollinger_hband(),
            "middle": bb.bollinger_mavg(),
            "lower": bb.bollinger_lband(),
        },
        index=series.index,
    )


def vwap(high: SeriesLike, low: SeriesLike, close: SeriesLike, volume: SeriesLike) -> pd.Series:
    """Cumulative VWAP of the typical price.

    Rows with missing inputs contribute nothing and repeat the previous
    value; leading invalid rows are 0.
    """

    h = _ensure_series(high, "high")
    l = _ensure_series(low, "low")
    c = _ensure_series(close, "close")
    v = _ensure_series(volume, "volume")
    frame = pd.concat([h, l, c, v], axis=1, keys=["high", "low", "close", "volume"])
    valid = frame.notna().all(axis=1)
    typical = (frame["high"] + frame["low"] + frame["close"]) / 3.0
    tpv = (typical * frame["volume"]).where(valid, 0.0).cumsum()
    vol = frame["volume"].where(valid, 0.0).cumsum()
    result = (tpv / vol.replace(0.0, np.nan)).fillna(0.0)
    return result.rename("vwap")


def true_range(high: SeriesLike, low: SeriesLike, close: SeriesLike) -> pd.Series:
    """True range per candle; the first candle has no previous close and is NaN."""

    h = _ensure_series(high, "high").reset_index(drop=True)
    l = _ensure_series(low, "low").reset_index(drop=True)
    c = _ensure_series(close, "close").reset_index(drop=True)
    prev_close = c.shift()
    tr = pd.concat([
        h - l,
        (h - prev_close).abs(),
        (l - prev_close).abs(),
    ], axis=1).max(axis=1, skipna=False)
    return tr


def atr(high: SeriesLike, low: SeriesLike, close: SeriesLike, period: int = 14) -> Optional[float]:
    """Simple average of the last ``period`` true ranges.

    Returns ``None`` when fewer than ``period + 1`` candles are available.
    """

    tr = true_range(high, low, close).dropna()
    if period <= 0 or len(tr) < period:
        return None
    return float(tr.iloc[-period:].mean())


def longest_run(flags: Iterable[bool]) -> int:
    best = current = 0
    for flag in flags:
        current = current + 1 if flag else 0
        best = max(best, current)
    return best


__all__ = [
    "OHLCV_COLUMNS",
    "closed_candles",
    "ema",
    "bollinger_bands",
    "vwap",
    "true_range",
    "atr",
    "longest_run",
]
