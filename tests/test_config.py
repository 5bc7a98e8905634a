from dataclasses import replace

import pytest

import config
from config import (
    EmaSettings,
    EngineSettings,
    ExchangeSettings,
    SidewaysSettings,
    load_engine_settings,
    validate_settings,
)


def test_defaults_follow_strategy_settings():
    settings = EngineSettings()

    assert settings.exchange.interval == "3m"
    assert settings.exchange.leverage == 10
    assert settings.exchange.position_ratio == 0.1
    assert (settings.ema.short_period, settings.ema.long_period) == (7, 21)
    assert (settings.bollinger.period, settings.bollinger.std_dev) == (20, 2.0)
    assert settings.signal.max_red_candles == 3
    assert settings.signal.signal_valid_candles == 3
    assert settings.scoring.selection_count == 5
    assert settings.sideways.min_sideways_duration == 6


def test_load_engine_settings_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("ENGINE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LEVERAGE", "5")
    monkeypatch.setenv("POSITION_RATIO", "0.25")
    monkeypatch.setenv("EMA_SHORT_PERIOD", "9")
    monkeypatch.setenv("SIDEWAYS_EXIT_ENABLED", "off")
    monkeypatch.setenv("TAKE_PROFIT_TIME_RANGES", "09:30-11:00, 14:00-16:00")

    settings = load_engine_settings()

    assert settings.exchange.leverage == 5
    assert settings.exchange.position_ratio == 0.25
    assert settings.ema.short_period == 9
    assert settings.sideways.enabled is False
    assert settings.risk.take_profit_time_ranges == (("09:30", "11:00"), ("14:00", "16:00"))
    assert settings.storage.position_file.startswith(str(tmp_path / "data"))
    assert (tmp_path / "data").is_dir()


def test_malformed_values_fall_back_to_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("ENGINE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LEVERAGE", "ten")
    monkeypatch.setenv("BOLL_STD_DEV", "wide")
    monkeypatch.setenv("ENABLE_STOP_LOSS", "maybe")

    settings = load_engine_settings()

    assert settings.exchange.leverage == 10
    assert settings.bollinger.std_dev == 2.0
    assert settings.risk.enable_stop_loss is True


def test_parse_time_ranges_drops_malformed_entries():
    assert config._parse_time_ranges(None) == ()
    assert config._parse_time_ranges("9-10,08:00-09:00,bogus") == (("08:00", "09:00"),)


def test_validate_settings_accepts_defaults():
    settings = EngineSettings()
    assert validate_settings(settings) is settings


def test_validate_settings_lists_every_problem():
    settings = replace(
        EngineSettings(),
        ema=EmaSettings(short_period=30, long_period=21),
        sideways=replace(SidewaysSettings(), min_sideways_duration=0),
        exchange=replace(ExchangeSettings(), position_ratio=1.5),
    )

    with pytest.raises(ValueError) as excinfo:
        validate_settings(settings)

    message = str(excinfo.value)
    assert "ema.short_period must be < ema.long_period" in message
    assert "sideways.min_sideways_duration" in message
    assert "exchange.position_ratio" in message


def test_public_names_resolve():
    for name in config.__all__:
        assert hasattr(config, name), name
