"""
EMA cross signal detection confirmed against the Bollinger mid-line.

The detector looks at the most recent ``signal_valid_candles`` aligned
indicator rows, newest first, and stops at the first EMA cross it finds.
A golden cross only becomes a long signal when the close at the cross
candle sits on or above the Bollinger middle band; a death cross becomes a
short signal when the close is on or below it.  A chop filter then
invalidates a long that coincides with a run of bearish candles (and a
short that coincides with a run of bullish candles).

Insufficient history never raises; it yields ``Signal.skip(symbol)`` whose
score is the ``SKIP_SCORE`` sentinel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import pandas as pd

from config import BollingerSettings, EmaSettings, SignalSettings
from indicators import bollinger_bands, ema, longest_run
from log_utils import setup_logger

logger = setup_logger(__name__)

LONG = "LONG"
SHORT = "SHORT"
NONE = "NONE"

GOLDEN = "golden"
DEATH = "death"

SKIP_SCORE = -999


@dataclass(frozen=True)
class Signal:
    """Transient entry signal for one symbol and one evaluation cycle."""

    symbol: str
    direction: str = NONE
    score: int = 0
    confirmed_at_index: Optional[int] = None
    invalidated: bool = False

    @classmethod
    def skip(cls, symbol: str) -> "Signal":
        return cls(symbol=symbol, direction=NONE, score=SKIP_SCORE)

    @property
    def is_long(self) -> bool:
        return self.direction == LONG

    @property
    def is_short(self) -> bool:
        return self.direction == SHORT

    @property
    def skipped(self) -> bool:
        return self.score == SKIP_SCORE


def minimum_candles(ema_cfg: EmaSettings, boll_cfg: BollingerSettings, sig_cfg: SignalSettings) -> int:
    """Closed candles required before the detector will look for a cross."""

    return max(ema_cfg.long_period, boll_cfg.period, sig_cfg.max_red_candles) + sig_cfg.history_margin


def _aligned_frame(candles: pd.DataFrame, ema_cfg: EmaSettings, boll_cfg: BollingerSettings) -> pd.DataFrame:
    close = candles["close"].astype(float)
    bands = bollinger_bands(close, boll_cfg.period, boll_cfg.std_dev)
    frame = pd.DataFrame(
        {
            "close": close,
            "ema_short": ema(close, ema_cfg.short_period),
            "ema_long": ema(close, ema_cfg.long_period),
            "middle": bands["middle"],
        },
        index=candles.index,
    )
    frame["position"] = range(len(frame))
    return frame.dropna()


def find_latest_cross(frame: pd.DataFrame, lookback: int) -> Optional[Tuple[str, int]]:
    """Return ``(kind, offset)`` of the newest cross within ``lookback`` rows.

    ``offset`` is the row offset inside ``frame``; the scan runs from the
    newest row backwards and the first cross found wins.
    """

    short = frame["ema_short"].to_numpy()
    long_ = frame["ema_long"].to_numpy()
    last = len(frame) - 1
    stop = max(0, last - lookback)
    for i in range(last, stop, -1):
        if short[i - 1] <= long_[i - 1] and short[i] > long_[i]:
            return GOLDEN, i
        if short[i - 1] >= long_[i - 1] and short[i] < long_[i]:
            return DEATH, i
    return None


def detect_signal(
    symbol: str,
    candles: Optional[pd.DataFrame],
    ema_cfg: EmaSettings,
    boll_cfg: BollingerSettings,
    sig_cfg: SignalSettings,
) -> Signal:
    """Evaluate ``candles`` (closed candles only) and return a :class:`Signal`."""

    required = minimum_candles(ema_cfg, boll_cfg, sig_cfg)
    if candles is None or len(candles) < required:
        logger.info(
            "%s: %d candles < %d required; skipping signal check",
            symbol,
            0 if candles is None else len(candles),
            required,
        )
        return Signal.skip(symbol)

    frame = _aligned_frame(candles, ema_cfg, boll_cfg)
    if len(frame) < 2:
        return Signal.skip(symbol)

    cross = find_latest_cross(frame, sig_cfg.signal_valid_candles)
    if cross is None:
        return Signal(symbol=symbol)

    kind, offset = cross
    row = frame.iloc[offset]
    direction = NONE
    if kind == GOLDEN and row["close"] >= row["middle"]:
        direction = LONG
    elif kind == DEATH and row["close"] <= row["middle"]:
        direction = SHORT
    cross_index = int(row["position"])
    if direction == NONE:
        logger.info("%s: %s cross at %d not confirmed by Bollinger middle", symbol, kind, cross_index)
        return Signal(symbol=symbol, confirmed_at_index=None)

    window = max(sig_cfg.signal_valid_candles, sig_cfg.max_red_candles)
    recent = candles.iloc[-window:]
    bearish = (recent["close"] < recent["open"]).tolist()
    bullish = (recent["close"] > recent["open"]).tolist()
    chopped = (
        (direction == LONG and longest_run(bearish) >= sig_cfg.max_red_candles)
        or (direction == SHORT and longest_run(bullish) >= sig_cfg.max_red_candles)
    )
    if chopped:
        logger.info("%s: %s signal invalidated by chop filter", symbol, direction)
        return Signal(symbol=symbol, direction=NONE, score=0, confirmed_at_index=cross_index, invalidated=True)

    logger.info("%s: %s signal confirmed at candle %d", symbol, direction, cross_index)
    return Signal(symbol=symbol, direction=direction, score=1, confirmed_at_index=cross_index)


__all__ = [
    "LONG",
    "SHORT",
    "NONE",
    "SKIP_SCORE",
    "Signal",
    "minimum_candles",
    "find_latest_cross",
    "detect_signal",
]
