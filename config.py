"""Central configuration loader for environment variables."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import os


def _clean_path(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = _clean_path(os.getenv(name))
    return raw or default


def _parse_time_ranges(raw: str | None) -> Tuple[Tuple[str, str], ...]:
    """Parse ``"09:30-11:00,14:00-16:00"`` into ``(("09:30", "11:00"), ...)``.

    Malformed entries are dropped; an empty result means "always allowed".
    """

    if not raw:
        return ()
    ranges: List[Tuple[str, str]] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if "-" not in chunk:
            continue
        start, end = (part.strip() for part in chunk.split("-", 1))
        if len(start) == 5 and len(end) == 5 and start[2] == ":" and end[2] == ":":
            ranges.append((start, end))
    return tuple(ranges)


# ---------------------------------------------------------------------------
# Data locations
# ---------------------------------------------------------------------------

DEFAULT_DATA_DIR = "./cache"


def _resolve_data_dir() -> str:
    candidate = _clean_path(os.getenv("ENGINE_DATA_DIR")) or DEFAULT_DATA_DIR
    try:
        os.makedirs(candidate, exist_ok=True)
        return candidate
    except OSError:
        os.makedirs(DEFAULT_DATA_DIR, exist_ok=True)
        return DEFAULT_DATA_DIR


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmaSettings:
    short_period: int = 7
    long_period: int = 21


@dataclass(frozen=True)
class BollingerSettings:
    period: int = 20
    std_dev: float = 2.0


@dataclass(frozen=True)
class SignalSettings:
    """EMA cross detector knobs."""

    signal_valid_candles: int = 3
    max_red_candles: int = 3
    history_margin: int = 5
    candle_limit: int = 101


@dataclass(frozen=True)
class ScoringSettings:
    """Multi-factor ranking knobs used during symbol selection."""

    fast_ema: int = 5
    slow_ema: int = 13
    min_candles: int = 30
    min_score: int = 3
    ema_spread_margin: float = 0.05
    flat_window: int = 20
    flat_range_threshold: float = 0.01
    selection_count: int = 5


@dataclass(frozen=True)
class SidewaysSettings:
    enabled: bool = True
    price_std_period: int = 10
    price_std_threshold: float = 0.002
    boll_narrow_period: int = 10
    boll_narrow_threshold: float = 0.01
    min_sideways_duration: int = 6


@dataclass(frozen=True)
class RiskSettings:
    """Dynamic stop-loss / take-profit pricing knobs."""

    atr_interval: str = "15m"
    atr_period: int = 14
    take_profit_atr: float = 2.0
    stop_loss_atr: float = 1.2
    sr_lookback: int = 50
    sr_band: float = 0.005
    sr_buffer: float = 0.005
    min_distance: float = 0.01
    min_reward_risk: float = 1.5
    sanity_fallback: float = 0.02
    fallback_take_profit: float = 0.02
    fallback_stop_loss: float = 0.01
    live_price_buffer: float = 0.005
    enable_stop_loss: bool = True
    enable_take_profit: bool = True
    take_profit_time_ranges: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ExitSettings:
    ema_period: int = 21
    candle_limit: int = 100
    min_candles: int = 30
    volatility_window: int = 5
    volatility_threshold: float = 0.0015
    min_holding_minutes: float = 30.0
    min_profit_rate: float = 0.005
    quick_exit_minutes: float = 15.0
    quick_exit_profit_rate: float = 0.01


@dataclass(frozen=True)
class RegimeSettings:
    strong_ratio: float = 0.85
    trend_ratio: float = 0.7
    mean_change: float = 0.5
    significant_ratio: float = 0.6
    significant_move: float = 1.0
    strong_confidence: float = 95.0
    max_trend_confidence: float = 90.0


@dataclass(frozen=True)
class ExchangeSettings:
    api_key: str = ""
    api_secret: str = ""
    testnet: bool = False
    interval: str = "3m"
    leverage: int = 10
    position_ratio: float = 0.1
    universe_size: int = 50
    fetch_timeout: float = 10.0
    max_concurrency: int = 5


@dataclass(frozen=True)
class TelegramSettings:
    token: str = ""
    chat_id: str = ""
    timeout: float = 10.0


@dataclass(frozen=True)
class StorageSettings:
    position_file: str = os.path.join(DEFAULT_DATA_DIR, "position.json")
    universe_file: str = os.path.join(DEFAULT_DATA_DIR, "top50.json")
    precision_file: str = os.path.join(DEFAULT_DATA_DIR, "precision.json")


@dataclass(frozen=True)
class EngineSettings:
    """Immutable configuration for one engine process."""

    ema: EmaSettings = field(default_factory=EmaSettings)
    bollinger: BollingerSettings = field(default_factory=BollingerSettings)
    signal: SignalSettings = field(default_factory=SignalSettings)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    sideways: SidewaysSettings = field(default_factory=SidewaysSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    exit: ExitSettings = field(default_factory=ExitSettings)
    regime: RegimeSettings = field(default_factory=RegimeSettings)
    exchange: ExchangeSettings = field(default_factory=ExchangeSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    cycle_seconds: float = 180.0


def load_engine_settings() -> EngineSettings:
    """Load engine settings from environment variables."""

    data_dir = _resolve_data_dir()
    return EngineSettings(
        ema=EmaSettings(
            short_period=_env_int("EMA_SHORT_PERIOD", 7),
            long_period=_env_int("EMA_LONG_PERIOD", 21),
        ),
        bollinger=BollingerSettings(
            period=_env_int("BOLL_PERIOD", 20),
            std_dev=_env_float("BOLL_STD_DEV", 2.0),
        ),
        signal=SignalSettings(
            signal_valid_candles=_env_int("SIGNAL_VALID_CANDLES", 3),
            max_red_candles=_env_int("MAX_RED_CANDLES", 3),
            history_margin=_env_int("SIGNAL_HISTORY_MARGIN", 5),
            candle_limit=_env_int("SIGNAL_CANDLE_LIMIT", 101),
        ),
        scoring=ScoringSettings(
            min_score=_env_int("SCORE_MIN", 3),
            ema_spread_margin=_env_float("SCORE_EMA_SPREAD_MARGIN", 0.05),
            flat_range_threshold=_env_float("FLAT_RANGE_THRESHOLD", 0.01),
            selection_count=_env_int("SELECTION_COUNT", 5),
        ),
        sideways=SidewaysSettings(
            enabled=_env_bool("SIDEWAYS_EXIT_ENABLED", True),
            price_std_period=_env_int("SIDEWAYS_PRICE_STD_PERIOD", 10),
            price_std_threshold=_env_float("SIDEWAYS_PRICE_STD_THRESHOLD", 0.002),
            boll_narrow_period=_env_int("SIDEWAYS_BOLL_NARROW_PERIOD", 10),
            boll_narrow_threshold=_env_float("SIDEWAYS_BOLL_NARROW_THRESHOLD", 0.01),
            min_sideways_duration=_env_int("SIDEWAYS_MIN_DURATION", 6),
        ),
        risk=RiskSettings(
            take_profit_atr=_env_float("RISK_TAKE_PROFIT_ATR", 2.0),
            stop_loss_atr=_env_float("RISK_STOP_LOSS_ATR", 1.2),
            sr_band=_env_float("RISK_SR_BAND", 0.005),
            min_reward_risk=_env_float("RISK_MIN_REWARD_RISK", 1.5),
            enable_stop_loss=_env_bool("ENABLE_STOP_LOSS", True),
            enable_take_profit=_env_bool("ENABLE_TAKE_PROFIT", True),
            take_profit_time_ranges=_parse_time_ranges(os.getenv("TAKE_PROFIT_TIME_RANGES")),
        ),
        exit=ExitSettings(
            volatility_threshold=_env_float("EXIT_VOLATILITY_THRESHOLD", 0.0015),
            min_holding_minutes=_env_float("EXIT_MIN_HOLDING_MINUTES", 30.0),
            min_profit_rate=_env_float("EXIT_MIN_PROFIT_RATE", 0.005),
        ),
        regime=RegimeSettings(),
        exchange=ExchangeSettings(
            api_key=_env_str("BINANCE_API_KEY", ""),
            api_secret=_env_str("BINANCE_API_SECRET", ""),
            testnet=_env_bool("BINANCE_TESTNET", False),
            interval=_env_str("STRATEGY_INTERVAL", "3m"),
            leverage=max(1, _env_int("LEVERAGE", 10)),
            position_ratio=_env_float("POSITION_RATIO", 0.1),
            universe_size=max(1, _env_int("UNIVERSE_SIZE", 50)),
            fetch_timeout=max(1.0, _env_float("CANDLE_FETCH_TIMEOUT", 10.0)),
            max_concurrency=max(1, _env_int("MAX_CONCURRENCY", 5)),
        ),
        telegram=TelegramSettings(
            token=_env_str("TELEGRAM_TOKEN", ""),
            chat_id=_env_str("TELEGRAM_CHAT_ID", ""),
        ),
        storage=StorageSettings(
            position_file=os.path.join(data_dir, "position.json"),
            universe_file=os.path.join(data_dir, "top50.json"),
            precision_file=os.path.join(data_dir, "precision.json"),
        ),
        cycle_seconds=max(10.0, _env_float("CYCLE_SECONDS", 180.0)),
    )


def validate_settings(settings: EngineSettings) -> EngineSettings:
    """Raise ``ValueError`` naming every invalid field, else return ``settings``."""

    errors: List[str] = []

    def _require(condition: bool, message: str) -> None:
        if not condition:
            errors.append(message)

    ema = settings.ema
    _require(ema.short_period >= 1, "ema.short_period must be >= 1")
    _require(ema.short_period < ema.long_period, "ema.short_period must be < ema.long_period")
    _require(settings.bollinger.period >= 2, "bollinger.period must be >= 2")
    _require(settings.bollinger.std_dev > 0, "bollinger.std_dev must be > 0")

    sig = settings.signal
    _require(sig.signal_valid_candles >= 1, "signal.signal_valid_candles must be >= 1")
    _require(sig.max_red_candles >= 1, "signal.max_red_candles must be >= 1")
    _require(sig.history_margin >= 0, "signal.history_margin must be >= 0")

    scoring = settings.scoring
    _require(scoring.fast_ema < scoring.slow_ema, "scoring.fast_ema must be < scoring.slow_ema")
    _require(0 <= scoring.min_score <= 5, "scoring.min_score must be within 0..5")
    _require(scoring.flat_range_threshold >= 0, "scoring.flat_range_threshold must be >= 0")
    _require(scoring.selection_count >= 1, "scoring.selection_count must be >= 1")

    side = settings.sideways
    _require(side.price_std_period >= 2, "sideways.price_std_period must be >= 2")
    _require(side.min_sideways_duration >= 1, "sideways.min_sideways_duration must be >= 1")
    _require(side.price_std_threshold > 0, "sideways.price_std_threshold must be > 0")
    _require(side.boll_narrow_threshold > 0, "sideways.boll_narrow_threshold must be > 0")

    risk = settings.risk
    _require(risk.atr_period >= 1, "risk.atr_period must be >= 1")
    _require(risk.take_profit_atr > 0, "risk.take_profit_atr must be > 0")
    _require(risk.stop_loss_atr > 0, "risk.stop_loss_atr must be > 0")
    _require(risk.min_reward_risk > 0, "risk.min_reward_risk must be > 0")
    _require(0 < risk.sr_band < 1, "risk.sr_band must be within (0, 1)")
    _require(side.boll_narrow_period >= 1, "sideways.boll_narrow_period must be >= 1")
    _require(0 < risk.fallback_stop_loss < 1, "risk.fallback_stop_loss must be within (0, 1)")
    _require(0 < risk.fallback_take_profit < 1, "risk.fallback_take_profit must be within (0, 1)")

    ex = settings.exit
    _require(ex.volatility_window >= 1, "exit.volatility_window must be >= 1")
    _require(ex.min_holding_minutes >= 0, "exit.min_holding_minutes must be >= 0")

    exch = settings.exchange
    _require(0 < exch.position_ratio <= 1, "exchange.position_ratio must be within (0, 1]")
    _require(exch.leverage >= 1, "exchange.leverage must be >= 1")

    if errors:
        raise ValueError("Invalid engine settings: " + "; ".join(errors))
    return settings


__all__ = [
    "EngineSettings",
    "EmaSettings",
    "BollingerSettings",
    "SignalSettings",
    "ScoringSettings",
    "SidewaysSettings",
    "RiskSettings",
    "ExitSettings",
    "RegimeSettings",
    "ExchangeSettings",
    "TelegramSettings",
    "StorageSettings",
    "load_engine_settings",
    "validate_settings",
]
