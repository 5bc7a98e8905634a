import asyncio

import pandas as pd

from config import BollingerSettings, ScoringSettings
from signal_detector import LONG, SHORT
from symbol_scorer import (
    ScoredSymbol,
    factor_scores,
    rank_symbols,
    score_symbol,
    select_top_symbols,
)

SCORING = ScoringSettings()
BOLL = BollingerSettings()


def _candles(closes):
    index = pd.date_range("2024-01-01", periods=len(closes), freq="3min", tz="UTC")
    opens = [closes[0]] + list(closes[:-1])
    frame = pd.DataFrame({"open": opens, "close": closes}, index=index, dtype=float)
    frame["high"] = frame[["open", "close"]].max(axis=1) + 0.5
    frame["low"] = frame[["open", "close"]].min(axis=1) - 0.5
    frame["volume"] = 10.0
    return frame[["open", "high", "low", "close", "volume"]]


def _uptrend():
    return _candles([100.0 + i for i in range(40)])


def _downtrend():
    return _candles([140.0 - i for i in range(40)])


def test_factor_scores_for_trending_markets():
    assert factor_scores(_uptrend(), SCORING, BOLL) == (4, 0)
    assert factor_scores(_downtrend(), SCORING, BOLL) == (0, 4)


def test_score_symbol_picks_direction():
    long_result = score_symbol("AAAUSDT", _uptrend(), SCORING, BOLL)
    short_result = score_symbol("BBBUSDT", _downtrend(), SCORING, BOLL)

    assert long_result == ScoredSymbol("AAAUSDT", LONG, 4, 4, 0)
    assert short_result == ScoredSymbol("BBBUSDT", SHORT, 4, 0, 4)


def test_flat_symbols_are_excluded():
    index = pd.date_range("2024-01-01", periods=40, freq="3min", tz="UTC")
    flat = pd.DataFrame(
        {"open": 100.0, "high": 100.2, "low": 99.9, "close": 100.0, "volume": 10.0},
        index=index,
    )

    assert score_symbol("FLATUSDT", flat, SCORING, BOLL) is None


def test_short_history_is_not_scored():
    assert score_symbol("NEWUSDT", _uptrend().iloc[:20], SCORING, BOLL) is None
    assert score_symbol("NEWUSDT", None, SCORING, BOLL) is None


def test_min_score_gate():
    strict = ScoringSettings(min_score=5)

    assert score_symbol("AAAUSDT", _uptrend(), strict, BOLL) is None


def test_rank_symbols_is_stable_on_ties():
    results = [
        ScoredSymbol("A", LONG, 4),
        ScoredSymbol("B", LONG, 5),
        None,
        ScoredSymbol("C", LONG, 4),
        ScoredSymbol("D", SHORT, 3),
    ]

    top_long, top_short = rank_symbols(results, 2)

    assert [r.symbol for r in top_long] == ["B", "A"]
    assert [r.symbol for r in top_short] == ["D"]


def test_select_top_symbols_isolates_failures():
    frames = {"UPUSDT": _uptrend(), "DOWNUSDT": _downtrend()}

    async def fetch(symbol):
        if symbol == "BADUSDT":
            raise RuntimeError("exchange unavailable")
        if symbol == "NONEUSDT":
            return None
        return frames[symbol]

    top_long, top_short = asyncio.run(
        select_top_symbols(
            ["UPUSDT", "BADUSDT", "NONEUSDT", "DOWNUSDT"], fetch, SCORING, BOLL, max_concurrency=2
        )
    )

    assert [r.symbol for r in top_long] == ["UPUSDT"]
    assert [r.symbol for r in top_short] == ["DOWNUSDT"]
