"""Engine state shared between cycles.

The last classified market regime and a little cycle bookkeeping live in
one container guarded by a re-entrant lock.  Writers publish whole
values at the end of a completed step; readers take an immutable
:class:`EngineContext` snapshot at the start of a cycle and never see a
value change underneath them.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional

from market_regime import MarketRegime


@dataclass(frozen=True)
class EngineContext:
    """Read-only view of the engine state handed to one cycle."""

    regime: MarketRegime
    regime_updated_at: float
    cycle_count: int
    last_cycle_started: float
    last_cycle_finished: float

    def regime_age(self, now: Optional[float] = None) -> float:
        if self.regime_updated_at <= 0:
            return float("inf")
        ts = float(now if now is not None else time.time())
        return max(0.0, ts - self.regime_updated_at)


class EngineState:
    """Maintain state that survives between engine cycles."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._regime = MarketRegime()
        self._regime_updated_at = 0.0
        self._cycle_count = 0
        self._last_cycle_started = 0.0
        self._last_cycle_finished = 0.0

    def publish_regime(self, regime: MarketRegime, *, timestamp: Optional[float] = None) -> None:
        """Replace the regime atomically."""

        ts = float(timestamp if timestamp is not None else time.time())
        with self._lock:
            self._regime = regime
            self._regime_updated_at = ts

    def mark_cycle_started(self, *, timestamp: Optional[float] = None) -> None:
        ts = float(timestamp if timestamp is not None else time.time())
        with self._lock:
            self._cycle_count += 1
            self._last_cycle_started = ts

    def mark_cycle_finished(self, *, timestamp: Optional[float] = None) -> None:
        ts = float(timestamp if timestamp is not None else time.time())
        with self._lock:
            self._last_cycle_finished = ts

    def snapshot(self) -> EngineContext:
        with self._lock:
            return EngineContext(
                regime=self._regime,
                regime_updated_at=self._regime_updated_at,
                cycle_count=self._cycle_count,
                last_cycle_started=self._last_cycle_started,
                last_cycle_finished=self._last_cycle_finished,
            )


__all__ = ["EngineContext", "EngineState"]
