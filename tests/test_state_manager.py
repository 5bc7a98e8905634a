import math

from market_regime import NEUTRAL, STRONG_BULLISH, MarketRegime
from state_manager import EngineState


def test_initial_snapshot_is_neutral():
    context = EngineState().snapshot()

    assert context.regime.trend == NEUTRAL
    assert context.cycle_count == 0
    assert math.isinf(context.regime_age(100.0))


def test_publish_regime_replaces_value_for_new_snapshots():
    state = EngineState()
    before = state.snapshot()

    state.publish_regime(MarketRegime(trend=STRONG_BULLISH, confidence=95), timestamp=50.0)
    after = state.snapshot()

    assert before.regime.trend == NEUTRAL
    assert after.regime.trend == STRONG_BULLISH
    assert after.regime_age(80.0) == 30.0


def test_cycle_bookkeeping():
    state = EngineState()

    state.mark_cycle_started(timestamp=10.0)
    state.mark_cycle_finished(timestamp=12.0)
    state.mark_cycle_started(timestamp=20.0)
    context = state.snapshot()

    assert context.cycle_count == 2
    assert context.last_cycle_started == 20.0
    assert context.last_cycle_finished == 12.0
