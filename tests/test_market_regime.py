import pytest

from market_regime import (
    BEARISH,
    BULLISH,
    NEUTRAL,
    STRONG_BEARISH,
    STRONG_BULLISH,
    classify_market_regime,
    parse_ticker_changes,
    summarise_changes,
)


def test_strong_bullish_override():
    changes = [1.5] * 90 + [-0.5] * 10

    regime = classify_market_regime(changes, now=1000.0)

    assert regime.trend == STRONG_BULLISH
    assert regime.confidence == 95
    assert regime.is_one_sided is True
    assert regime.summary.up == 90
    assert regime.updated_at == 1000.0


def test_strong_bearish_override_wins_over_mean_rule():
    # Mean change is tiny but nearly everything is red.
    changes = [-0.1] * 90 + [0.2] * 10

    regime = classify_market_regime(changes)

    assert regime.trend == STRONG_BEARISH
    assert regime.confidence == 95


def test_bullish_requires_breadth_mean_and_significance():
    changes = [2.0] * 75 + [-1.0] * 25

    regime = classify_market_regime(changes)

    assert regime.trend == BULLISH
    assert regime.confidence == pytest.approx(75.0)
    assert regime.is_one_sided is True


def test_bearish_mirror():
    changes = [-2.0] * 80 + [1.0] * 20

    regime = classify_market_regime(changes)

    assert regime.trend == BEARISH
    assert regime.confidence == pytest.approx(80.0)


def test_bullish_without_significant_movers_is_neutral():
    changes = [0.8] * 75 + [-0.2] * 25

    regime = classify_market_regime(changes)

    assert regime.trend == NEUTRAL
    assert regime.confidence == 0
    assert regime.is_one_sided is False


def test_empty_snapshot_is_neutral():
    regime = classify_market_regime([])

    assert regime.trend == NEUTRAL
    assert regime.confidence == 0
    assert regime.summary.total == 0


def test_summary_counts_and_ratios():
    summary = summarise_changes([2.0, -3.0, 0.0, 0.5, "bad", None])

    assert summary.total == 4
    assert (summary.up, summary.down) == (2, 1)
    assert summary.significant_movers == 2
    assert summary.average_change == pytest.approx(-0.125)


def test_parse_ticker_changes_skips_non_numeric():
    tickers = [
        {"symbol": "BTCUSDT", "priceChangePercent": "1.25"},
        {"symbol": "ETHUSDT", "priceChangePercent": "n/a"},
        {"symbol": "SOLUSDT"},
    ]

    assert parse_ticker_changes(tickers) == [("BTCUSDT", 1.25)]


def test_describe_mentions_trend():
    text = classify_market_regime([1.5] * 9 + [-1.0]).describe()

    assert "strong_bullish" in text
    assert "up 9/10" in text
