"""
MARKET DATA
===========
Per-tick input models and the bounded bar history the detectors read.

- Candle            : OHLCV + candle time (ms), immutable
- IndicatorSnapshot : externally computed indicators, NaN when missing
- Bar               : candle + indicators + directional helpers
- BarHistory        : bounded, oldest-first window of bars

Records arrive as flat dicts (the feed/indicator layer's output);
``bar_from_record`` parses them and ``validate_candle`` rejects bad prices.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, fields
from typing import Any, Deque, Dict, List, Optional

import config
from circuit_breaker import DataValidationError

logger = logging.getLogger(__name__)

NAN = float("nan")


def is_num(value: Optional[float]) -> bool:
    """True for a real, finite number (missing indicators are NaN)."""
    return value is not None and not math.isnan(value) and not math.isinf(value)


def pct_change(new: float, old: float) -> float:
    return (new - old) / old * 100.0


# =====================================================================
# Models
# =====================================================================

@dataclass(frozen=True)
class Candle:
    time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def is_red(self) -> bool:
        return self.close < self.open

    def is_green(self) -> bool:
        return self.close > self.open


@dataclass(frozen=True)
class IndicatorSnapshot:
    atr:            float = NAN
    adx:            float = NAN
    rsi:            float = NAN
    ema_fast:       float = NAN
    ema_slow:       float = NAN
    macd:           float = NAN
    macd_signal:    float = NAN
    macd_histogram: float = NAN
    bb_upper:       float = NAN
    bb_middle:      float = NAN
    bb_lower:       float = NAN
    bb_width:       float = NAN


_INDICATOR_FIELDS = tuple(f.name for f in fields(IndicatorSnapshot))
_CANDLE_FIELDS = ("open", "high", "low", "close", "volume")


@dataclass(frozen=True)
class Bar:
    candle:     Candle
    indicators: IndicatorSnapshot

    # ── Directional classification ──────────────────────────────────────

    def is_upward(self, adx_threshold: float) -> bool:
        ind = self.indicators
        return (is_num(ind.ema_fast) and is_num(ind.ema_slow) and is_num(ind.adx)
                and ind.ema_fast > ind.ema_slow and ind.adx > adx_threshold)

    def is_downward(self, adx_threshold: float) -> bool:
        ind = self.indicators
        return (is_num(ind.ema_fast) and is_num(ind.ema_slow) and is_num(ind.adx)
                and ind.ema_fast < ind.ema_slow and ind.adx > adx_threshold)

    def is_stagnation(self, adx_max: float, bb_threshold: float) -> bool:
        ind = self.indicators
        return (is_num(ind.adx) and is_num(ind.bb_width)
                and ind.adx < adx_max and ind.bb_width < bb_threshold)

    def to_record(self) -> Dict[str, Any]:
        """Flat record (the same shape bar_from_record accepts)."""
        c = self.candle
        record: Dict[str, Any] = {
            "time_ms": c.time_ms, "open": c.open, "high": c.high,
            "low": c.low, "close": c.close, "volume": c.volume,
        }
        for name in _INDICATOR_FIELDS:
            value = getattr(self.indicators, name)
            record[name] = value if is_num(value) else None
        return record


# =====================================================================
# Parsing / validation
# =====================================================================

def _to_float(value: Any) -> float:
    if value is None:
        return NAN
    try:
        return float(value)
    except (TypeError, ValueError):
        return NAN


def bar_from_record(record: Dict[str, Any]) -> Bar:
    """
    Parse one input record. Absent or unparsable indicators become NaN;
    a missing time or OHLC field raises DataValidationError.
    """
    if not isinstance(record, dict):
        raise DataValidationError(f"record must be a mapping, got {type(record).__name__}")

    raw_time = record.get("time_ms", record.get("time"))
    try:
        time_ms = int(raw_time)
    except (TypeError, ValueError):
        raise DataValidationError(f"invalid candle time: {raw_time!r}")

    values = {name: _to_float(record.get(name)) for name in _CANDLE_FIELDS}
    for name in ("open", "high", "low", "close"):
        if not is_num(values[name]):
            raise DataValidationError(f"missing or NaN {name} at {time_ms}")
    if not is_num(values["volume"]):
        values["volume"] = 0.0

    ind = {name: _to_float(record.get(name)) for name in _INDICATOR_FIELDS}
    if not is_num(ind["bb_width"]) and all(
            is_num(ind[k]) for k in ("bb_upper", "bb_lower", "bb_middle")) and ind["bb_middle"] != 0:
        ind["bb_width"] = (ind["bb_upper"] - ind["bb_lower"]) / ind["bb_middle"]

    return Bar(candle=Candle(time_ms=time_ms, **values),
               indicators=IndicatorSnapshot(**ind))


def validate_candle(candle: Candle, previous_close: Optional[float],
                    max_jump_pct: float = config.MAX_PRICE_JUMP_PCT) -> None:
    """Raise DataValidationError for prices the pipeline must not see."""
    for name in ("open", "high", "low", "close"):
        value = getattr(candle, name)
        if not is_num(value):
            raise DataValidationError(f"{name} is not a number at {candle.time_ms}")
        if value <= 0:
            raise DataValidationError(f"non-positive {name}={value} at {candle.time_ms}")
    if candle.volume < 0:
        raise DataValidationError(f"negative volume={candle.volume} at {candle.time_ms}")
    if candle.high < candle.low:
        raise DataValidationError(
            f"high {candle.high} < low {candle.low} at {candle.time_ms}")
    if previous_close is not None and previous_close > 0:
        jump = abs(pct_change(candle.close, previous_close))
        if jump > max_jump_pct:
            raise DataValidationError(
                f"price jump {jump:.1f}% > {max_jump_pct}% at {candle.time_ms}")


# =====================================================================
# History
# =====================================================================

class BarHistory:
    """Oldest-first bounded window. ``bars[-1]`` is the current tick."""

    def __init__(self, maxlen: int = config.HISTORY_MAXLEN):
        self._bars: Deque[Bar] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._bars)

    def append(self, bar: Bar) -> None:
        self._bars.append(bar)

    @property
    def last(self) -> Optional[Bar]:
        return self._bars[-1] if self._bars else None

    @property
    def last_close(self) -> Optional[float]:
        return self._bars[-1].candle.close if self._bars else None

    @property
    def previous(self) -> Optional[Bar]:
        """Bar before the current one."""
        return self._bars[-2] if len(self._bars) > 1 else None

    def window(self, n: Optional[int] = None) -> List[Bar]:
        """Last n bars (all when n is None), oldest first."""
        bars = list(self._bars)
        return bars if n is None else bars[-n:]

    def to_records(self) -> List[Dict[str, Any]]:
        return [bar.to_record() for bar in self._bars]

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]],
                     maxlen: int = config.HISTORY_MAXLEN) -> "BarHistory":
        history = cls(maxlen=maxlen)
        for record in records:
            history.append(bar_from_record(record))
        return history
