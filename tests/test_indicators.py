import math

import numpy as np
import pandas as pd
import pytest

from indicators import (
    OHLCV_COLUMNS,
    atr,
    bollinger_bands,
    closed_candles,
    ema,
    longest_run,
    true_range,
    vwap,
)


def _close(values):
    index = pd.date_range("2024-01-01", periods=len(values), freq="3min", tz="UTC")
    return pd.Series(values, index=index, dtype=float, name="close")


def test_ema_leaves_warm_up_as_nan_and_matches_recursive_average():
    close = _close(np.linspace(100, 130, 31))

    result = ema(close, 5)
    expected = close.ewm(span=5, adjust=False).mean()

    assert result.iloc[:4].isna().all()
    assert result.index.equals(close.index)
    assert math.isclose(result.iloc[-1], expected.iloc[-1], rel_tol=1e-9)


def test_bollinger_uses_population_standard_deviation():
    close = _close([float(v) for v in range(1, 41)])

    bands = bollinger_bands(close, 20, 2.0)
    rolling = close.rolling(20)

    assert list(bands.columns) == ["upper", "middle", "lower"]
    assert bands.iloc[:19].isna().all().all()
    assert math.isclose(bands["middle"].iloc[-1], rolling.mean().iloc[-1])
    width = bands["upper"].iloc[-1] - bands["middle"].iloc[-1]
    assert math.isclose(width, 2.0 * rolling.std(ddof=0).iloc[-1], rel_tol=1e-9)


def test_ema_accepts_single_column_frame():
    close = _close(np.linspace(1, 2, 10))

    from_frame = ema(close.to_frame(), 3)

    assert math.isclose(from_frame.iloc[-1], ema(close, 3).iloc[-1])


def test_vwap_is_cumulative_and_repeats_over_invalid_rows():
    high = [3.0, np.nan, 6.0]
    low = [1.0, 1.0, 3.0]
    close = [2.0, 2.0, 3.0]
    volume = [1.0, 1.0, 1.0]

    result = vwap(high, low, close, volume)

    assert result.tolist() == pytest.approx([2.0, 2.0, 3.0])


def test_vwap_leading_zero_volume_is_zero():
    result = vwap([2.0, 4.0], [2.0, 4.0], [2.0, 4.0], [0.0, 2.0])

    assert result.tolist() == pytest.approx([0.0, 4.0])


def test_true_range_uses_previous_close():
    tr = true_range([11.0, 12.0, 10.0], [9.0, 11.0, 8.0], [10.0, 11.5, 9.0])

    assert math.isnan(tr.iloc[0])
    # second candle: max(1, |12 - 10|, |11 - 10|) = 2
    assert tr.iloc[1] == pytest.approx(2.0)
    assert tr.iloc[2] == pytest.approx(3.5)


def test_atr_averages_last_period_true_ranges():
    high = [11.0] * 4
    low = [9.0] * 4
    close = [10.0] * 4

    assert atr(high, low, close, period=3) == pytest.approx(2.0)
    assert atr(high[:3], low[:3], close[:3], period=3) is None


def test_closed_candles_drops_open_candle():
    frame = pd.DataFrame({col: [1.0, 2.0, 3.0] for col in OHLCV_COLUMNS})

    result = closed_candles(frame)

    assert len(result) == 2
    assert result["close"].tolist() == [1.0, 2.0]
    empty = closed_candles(pd.DataFrame())
    assert empty.empty
    assert list(empty.columns) == list(OHLCV_COLUMNS)


def test_longest_run():
    assert longest_run([]) == 0
    assert longest_run([True, False, True, True, False, True]) == 2
    assert longest_run([False, False]) == 0
