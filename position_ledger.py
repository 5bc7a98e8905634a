"""
Local ledger of open futures positions.

The ledger is one JSON document keyed by symbol.  Reconciliation rebuilds
the whole document from what the exchange reports and swaps it in with a
single atomic write, so readers never see a half-merged state.  Each entry
carries the EMA21 and Bollinger middle captured when the position was
first seen; exit rules compare current indicators against that frozen
reference.
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

import pandas as pd

from indicators import bollinger_bands, ema
from json_store import dump_json, load_json
from log_utils import setup_logger

logger = setup_logger(__name__)

BUY = "BUY"
SELL = "SELL"

EntrySnapshot = Tuple[Optional[float], Optional[float]]


def side_for_amount(amount: float) -> str:
    if amount > 0:
        return BUY
    if amount < 0:
        return SELL
    raise ValueError("a zero position amount has no side")


@dataclass(frozen=True)
class Position:
    symbol: str
    side: str
    position_amt: float
    entry_price: float
    entry_time: float
    entry_ema: Optional[float] = None
    entry_boll: Optional[float] = None
    # protective trigger orders confirmed by the exchange
    stop_placed: bool = False
    target_placed: bool = False

    def __post_init__(self) -> None:
        expected = side_for_amount(float(self.position_amt))
        if self.side != expected:
            raise ValueError(
                f"{self.symbol}: side {self.side} disagrees with amount {self.position_amt}"
            )

    @property
    def quantity(self) -> float:
        return abs(float(self.position_amt))

    def held_minutes(self, now: Optional[float] = None) -> float:
        ts = float(now if now is not None else time.time())
        return max(0.0, ts - self.entry_time) / 60.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Position":
        amount = float(data["position_amt"])
        return cls(
            symbol=str(data["symbol"]),
            side=str(data.get("side") or side_for_amount(amount)),
            position_amt=amount,
            entry_price=float(data["entry_price"]),
            entry_time=float(data.get("entry_time", 0.0)),
            entry_ema=_optional_float(data.get("entry_ema")),
            entry_boll=_optional_float(data.get("entry_boll")),
            stop_placed=bool(data.get("stop_placed", False)),
            target_placed=bool(data.get("target_placed", False)),
        )


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def capture_entry_indicators(
    candles: Optional[pd.DataFrame],
    ema_period: int = 21,
    boll_period: int = 20,
    boll_std: float = 2.0,
) -> EntrySnapshot:
    """Latest EMA and Bollinger middle of ``candles``; ``None`` during warm-up."""

    if candles is None or candles.empty:
        return None, None
    close = candles["close"]
    ema_values = ema(close, ema_period).dropna()
    middle = bollinger_bands(close, boll_period, boll_std)["middle"].dropna()
    entry_ema = float(ema_values.iloc[-1]) if not ema_values.empty else None
    entry_boll = float(middle.iloc[-1]) if not middle.empty else None
    return entry_ema, entry_boll


class PositionLedger:
    """Whole-document JSON ledger guarded by a re-entrant lock."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.RLock()

    def _read(self) -> Dict[str, Position]:
        raw = load_json(self.path, {})
        positions: Dict[str, Position] = {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed ledger document at %s", self.path)
            return positions
        for symbol, entry in raw.items():
            try:
                positions[symbol] = Position.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping invalid ledger entry %s: %s", symbol, exc)
        return positions

    def _write(self, positions: Mapping[str, Position]) -> None:
        dump_json(self.path, {sym: pos.to_dict() for sym, pos in positions.items()})

    def snapshot(self) -> Dict[str, Position]:
        """Copy of all positions, consistent for the whole caller cycle."""

        with self._lock:
            return copy.copy(self._read())

    def get(self, symbol: str) -> Optional[Position]:
        with self._lock:
            return self._read().get(symbol)

    def has(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def set(self, position: Position) -> None:
        with self._lock:
            positions = self._read()
            positions[position.symbol] = position
            self._write(positions)
        logger.info("Ledger stored %s", position.symbol)

    def remove(self, symbol: str) -> bool:
        with self._lock:
            positions = self._read()
            if symbol not in positions:
                return False
            del positions[symbol]
            self._write(positions)
        logger.info("Ledger removed %s", symbol)
        return True

    def mark_protection(self, symbol: str, *, stop_placed: bool = False, target_placed: bool = False) -> bool:
        """Record protective orders placed for ``symbol``; flags only ever turn on."""

        with self._lock:
            positions = self._read()
            current = positions.get(symbol)
            if current is None:
                return False
            positions[symbol] = replace(
                current,
                stop_placed=current.stop_placed or stop_placed,
                target_placed=current.target_placed or target_placed,
            )
            self._write(positions)
        return True

    def replace_all(self, positions: Iterable[Position]) -> None:
        document = {p.symbol: p for p in positions}
        with self._lock:
            self._write(document)

    def untracked_symbols(self, exchange_positions: Iterable[Mapping[str, Any]]) -> list:
        """Symbols the exchange reports that need a fresh entry snapshot."""

        current = self.snapshot()
        missing = []
        for item in exchange_positions:
            amount = float(item.get("positionAmt", 0) or 0)
            if amount == 0:
                continue
            symbol = item["symbol"]
            known = current.get(symbol)
            if known is None or known.side != side_for_amount(amount):
                missing.append(symbol)
        return missing

    def reconcile(
        self,
        exchange_positions: Iterable[Mapping[str, Any]],
        entry_snapshot: Callable[[str], EntrySnapshot],
        *,
        now: Optional[float] = None,
    ) -> Dict[str, Position]:
        """Replace the ledger with the exchange's view of open positions.

        Entries already tracked on the same side keep their entry time,
        indicator snapshot and protection flags; new (or flipped) positions
        get a fresh snapshot from ``entry_snapshot(symbol)``.  Symbols absent
        from the report are dropped.
        """

        ts = float(now if now is not None else time.time())
        with self._lock:
            previous = self._read()
            rebuilt: Dict[str, Position] = {}
            for item in exchange_positions:
                amount = float(item.get("positionAmt", 0) or 0)
                if amount == 0:
                    continue
                symbol = str(item["symbol"])
                side = side_for_amount(amount)
                entry_price = float(item.get("entryPrice", 0) or 0)
                known = previous.get(symbol)
                if known is not None and known.side == side:
                    rebuilt[symbol] = Position(
                        symbol, side, amount, entry_price,
                        known.entry_time, known.entry_ema, known.entry_boll,
                        stop_placed=known.stop_placed, target_placed=known.target_placed,
                    )
                    continue
                try:
                    entry_ema, entry_boll = entry_snapshot(symbol)
                except Exception as exc:
                    logger.warning("%s entry snapshot unavailable: %s", symbol, exc)
                    entry_ema, entry_boll = None, None
                update_ms = float(item.get("updateTime", 0) or 0)
                entry_time = update_ms / 1000.0 if update_ms > 0 else ts
                rebuilt[symbol] = Position(
                    symbol, side, amount, entry_price, entry_time, entry_ema, entry_boll
                )
                logger.info("Ledger tracking new %s %s position", side, symbol)
            for symbol in previous.keys() - rebuilt.keys():
                logger.info("Ledger dropping %s: no longer reported by the exchange", symbol)
            self._write(rebuilt)
        return dict(rebuilt)


__all__ = [
    "BUY",
    "SELL",
    "Position",
    "PositionLedger",
    "capture_entry_indicators",
    "side_for_amount",
]
