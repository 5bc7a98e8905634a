import pandas as pd

from config import BollingerSettings, EmaSettings, SignalSettings
from signal_detector import (
    DEATH,
    GOLDEN,
    LONG,
    NONE,
    SHORT,
    SKIP_SCORE,
    _aligned_frame,
    detect_signal,
    find_latest_cross,
    minimum_candles,
)

EMA = EmaSettings()
BOLL = BollingerSettings()
SIG = SignalSettings()


def _candles(closes, opens=None):
    if opens is None:
        opens = [closes[0]] + list(closes[:-1])
    index = pd.date_range("2024-01-01", periods=len(closes), freq="3min", tz="UTC")
    frame = pd.DataFrame({"open": opens, "close": closes}, index=index, dtype=float)
    frame["high"] = frame[["open", "close"]].max(axis=1) + 0.5
    frame["low"] = frame[["open", "close"]].min(axis=1) - 0.5
    frame["volume"] = 100.0
    return frame[["open", "high", "low", "close", "volume"]]


def _golden_closes():
    # 40 falling candles leave EMA7 below EMA21; two sharp rallies cross it.
    return [140.0 - i for i in range(40)] + [130.0, 150.0]


def _death_closes():
    return [100.0 + i for i in range(40)] + [110.0, 90.0]


def test_minimum_candles():
    assert minimum_candles(EMA, BOLL, SIG) == 26


def test_insufficient_history_is_skipped():
    signal = detect_signal("BTCUSDT", _candles([100.0 + i for i in range(10)]), EMA, BOLL, SIG)

    assert signal.direction == NONE
    assert signal.score == SKIP_SCORE
    assert signal.skipped
    assert detect_signal("BTCUSDT", None, EMA, BOLL, SIG).skipped


def test_golden_cross_above_middle_is_long():
    candles = _candles(_golden_closes())

    signal = detect_signal("BTCUSDT", candles, EMA, BOLL, SIG)

    assert signal.direction == LONG
    assert signal.is_long
    assert signal.score == 1
    assert signal.confirmed_at_index == len(candles) - 1
    assert not signal.invalidated


def test_death_cross_below_middle_is_short():
    candles = _candles(_death_closes())

    signal = detect_signal("ETHUSDT", candles, EMA, BOLL, SIG)

    assert signal.direction == SHORT
    assert signal.is_short
    assert signal.score == 1
    assert signal.confirmed_at_index == len(candles) - 1


def test_bearish_candles_after_golden_cross_invalidate_long():
    closes = _golden_closes()
    opens = [closes[0]] + closes[:-1]
    # Gap-up opens make the last three candles bearish while closes keep rising.
    for i in range(len(closes) - 3, len(closes)):
        opens[i] = closes[i] + 1.0
    candles = _candles(closes, opens)

    signal = detect_signal("BTCUSDT", candles, EMA, BOLL, SIG)

    assert signal.direction == NONE
    assert signal.score == 0
    assert signal.invalidated
    assert signal.confirmed_at_index == len(candles) - 1


def test_steady_trend_without_recent_cross_is_neutral():
    candles = _candles([100.0 + i for i in range(42)])

    signal = detect_signal("BTCUSDT", candles, EMA, BOLL, SIG)

    assert signal.direction == NONE
    assert signal.score == 0
    assert not signal.skipped


def test_find_latest_cross_is_repeatable():
    frame = _aligned_frame(_candles(_golden_closes()), EMA, BOLL)

    first = find_latest_cross(frame, SIG.signal_valid_candles)
    second = find_latest_cross(frame, SIG.signal_valid_candles)

    assert first == second
    assert first[0] == GOLDEN
    assert find_latest_cross(_aligned_frame(_candles(_death_closes()), EMA, BOLL), 3)[0] == DEATH
