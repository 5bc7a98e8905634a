from flat_filter import is_flat_market


def test_narrow_range_is_flat():
    close = [100.0] * 20
    high = [100.3] * 20
    low = [99.8] * 20

    assert is_flat_market(close, high, low, range_threshold=0.01) is True


def test_wide_range_is_not_flat():
    close = [100.0 + i for i in range(20)]
    high = [c + 1 for c in close]
    low = [c - 1 for c in close]

    assert is_flat_market(close, high, low, range_threshold=0.01) is False


def test_only_trailing_window_counts():
    close = [50.0] + [100.0] * 20
    high = [200.0] + [100.3] * 20
    low = [10.0] + [99.8] * 20

    assert is_flat_market(close, high, low, window=20) is True


def test_short_history_is_not_flat():
    assert is_flat_market([100.0] * 19, [100.0] * 19, [100.0] * 19) is False
