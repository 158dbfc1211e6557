from typing import Any, Dict, List, Optional

from market_data import Bar, bar_from_record

T0 = 1_700_006_400_000          # 2023-11-15 00:00 UTC
MINUTE = 60_000


def make_record(close: float, open_: Optional[float] = None, high: Optional[float] = None,
                low: Optional[float] = None, volume: float = 100.0, time_ms: int = T0,
                **indicators: Any) -> Dict[str, Any]:
    open_ = close if open_ is None else open_
    record: Dict[str, Any] = {
        "time_ms": time_ms,
        "open": open_,
        "high": max(open_, close) if high is None else high,
        "low": min(open_, close) if low is None else low,
        "close": close,
        "volume": volume,
    }
    record.update(indicators)
    return record


def make_bar(close: float, **kwargs: Any) -> Bar:
    return bar_from_record(make_record(close, **kwargs))


def flat_records(n: int, price: float = 100.0, start: int = T0, step: int = MINUTE,
                 **indicators: Any) -> List[Dict[str, Any]]:
    """n quiet candles, open equal to close so none is red or green."""
    return [make_record(price, open_=price, volume=100.0, time_ms=start + i * step, **indicators)
            for i in range(n)]


def crash_records(start: int, step: int = MINUTE, **indicators: Any) -> List[Dict[str, Any]]:
    """Three red candles, the last closing 3% below the previous close, volume spike on the last."""
    return [
        make_record(100.0, open_=100.5, volume=100.0, time_ms=start, **indicators),
        make_record(100.0, open_=100.4, volume=100.0, time_ms=start + step, **indicators),
        make_record(97.0, open_=99.8, volume=400.0, time_ms=start + 2 * step, **indicators),
    ]
