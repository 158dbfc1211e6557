"""
regime_engine.py — Market Regime Classifier
============================================
Classifies the current market along three independent axes:

  volatility — current ATR vs mean ATR of the lookback window
  trend      — ADX strength gate, then fast vs slow EMA
  liquidity  — current volume vs mean volume of the lookback window

The MarketRegime instance lives in the engine context and is mutated in
place; ``version`` is bumped whenever a field actually changes so
downstream caches can key on it.  Recomputation is throttled to once per
``regime_update_interval_minutes`` of candle time.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

import config
from circuit_breaker import ErrorCategory, ErrorTracker
from market_data import Bar, is_num
from settings import MetaSettings

logger = logging.getLogger(__name__)

# ── Classification ratios ────────────────────────────────────────────────────
HIGH_RATIO = config.REGIME_HIGH_RATIO
LOW_RATIO  = config.REGIME_LOW_RATIO


class Volatility(str, Enum):
    LOW    = "low"
    NORMAL = "normal"
    HIGH   = "high"


class Trend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Liquidity(str, Enum):
    LOW    = "low"
    NORMAL = "normal"
    HIGH   = "high"


# ============================================================================
# MARKET REGIME
# ============================================================================

@dataclass
class MarketRegime:
    """One per instrument. Never reconstructed, only mutated by RegimeEngine."""
    volatility:   Volatility = Volatility.NORMAL
    trend:        Trend      = Trend.NEUTRAL
    liquidity:    Liquidity  = Liquidity.NORMAL
    last_updated: Optional[int] = None
    version:      int = 0

    @property
    def key(self) -> Tuple[str, str, str]:
        """Structural identity used for cache invalidation."""
        return (self.volatility.value, self.trend.value, self.liquidity.value)

    @property
    def compat_key(self) -> str:
        """``<volatility>-<trend>`` lookup key of the compatibility matrix."""
        return f"{self.volatility.value}-{self.trend.value}"

    def set(self, volatility: Optional[Volatility] = None, trend: Optional[Trend] = None,
            liquidity: Optional[Liquidity] = None) -> bool:
        """Apply new values; returns True (and bumps version) if anything changed."""
        old = self.key
        if volatility is not None:
            self.volatility = volatility
        if trend is not None:
            self.trend = trend
        if liquidity is not None:
            self.liquidity = liquidity
        if self.key != old:
            self.version += 1
            return True
        return False

    def to_dict(self) -> Dict:
        return {
            "volatility": self.volatility.value,
            "trend": self.trend.value,
            "liquidity": self.liquidity.value,
            "last_updated": self.last_updated,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "MarketRegime":
        return cls(
            volatility=Volatility(data.get("volatility", Volatility.NORMAL.value)),
            trend=Trend(data.get("trend", Trend.NEUTRAL.value)),
            liquidity=Liquidity(data.get("liquidity", Liquidity.NORMAL.value)),
            last_updated=data.get("last_updated"),
            version=int(data.get("version", 0)),
        )


# ============================================================================
# ENGINE
# ============================================================================

class RegimeEngine:
    """
    Called once per tick from PatternMetaStrategy.

        engine = RegimeEngine(settings.meta)
        engine.update(ctx.regime, history_bars, bar, now_ms, ctx.errors, warmed_up)
    """

    def __init__(self, settings: MetaSettings):
        self.adx_threshold = settings.trend_adx_threshold
        self.lookback      = settings.regime_lookback
        self.interval_ms   = int(settings.regime_update_interval_minutes * 60 * 1000)

    def due(self, regime: MarketRegime, now_ms: int) -> bool:
        return regime.last_updated is None or now_ms - regime.last_updated >= self.interval_ms

    # ── Public ───────────────────────────────────────────────────────────────

    def update(self, regime: MarketRegime, history: List[Bar], current: Bar,
               now_ms: int, errors: ErrorTracker, warmed_up: bool = True) -> MarketRegime:
        """
        ``history`` holds the bars BEFORE ``current``, oldest first.
        Never raises: faults are recorded and the regime is left as it was.
        """
        if not self.due(regime, now_ms):
            return regime
        if len(history) < self.lookback:
            return regime

        try:
            window = history[-self.lookback:]
            ind = current.indicators
            missing: List[str] = []

            volatility = self._classify_ratio(
                ind.atr, [b.indicators.atr for b in window], Volatility)
            if volatility is None:
                missing.append("atr")

            trend = self._classify_trend(ind.adx, ind.ema_fast, ind.ema_slow)
            if trend is None:
                missing.append("adx/ema")

            liquidity = self._classify_ratio(
                current.candle.volume, [b.candle.volume for b in window], Liquidity)
            if liquidity is None:
                missing.append("volume")

            changed = regime.set(volatility, trend, liquidity)
            regime.last_updated = now_ms

            if missing and warmed_up:
                errors.record(ErrorCategory.CALCULATION,
                              f"Market regime: missing {', '.join(missing)}", now_ms)
            if changed:
                logger.info(
                    f"📊 REGIME → vol={regime.volatility.value} "
                    f"trend={regime.trend.value} liq={regime.liquidity.value} "
                    f"(v{regime.version})")
        except Exception as e:
            logger.error(f"❌ RegimeEngine.update: {e}", exc_info=True)
            errors.record(ErrorCategory.CALCULATION, f"Market regime error: {e}", now_ms)
        return regime

    # ── Classification ────────────────────────────────────────────────────────

    def _classify_trend(self, adx: float, ema_fast: float, ema_slow: float) -> Optional[Trend]:
        if not is_num(adx):
            return None
        if adx <= self.adx_threshold:
            return Trend.NEUTRAL
        if not (is_num(ema_fast) and is_num(ema_slow)):
            return None
        if ema_fast > ema_slow:
            return Trend.BULLISH
        if ema_fast < ema_slow:
            return Trend.BEARISH
        return Trend.NEUTRAL

    @staticmethod
    def _classify_ratio(current: float, window: List[float], labels):
        """HIGH above 1.5× the window mean, LOW below 0.7×, else NORMAL."""
        if not is_num(current):
            return None
        mean = RegimeEngine._mean(window)
        if mean is None:
            return None
        if mean <= 0:
            return labels.NORMAL
        if current > mean * HIGH_RATIO:
            return labels.HIGH
        if current < mean * LOW_RATIO:
            return labels.LOW
        return labels.NORMAL

    # ── Math ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _mean(values: List[float]) -> Optional[float]:
        arr = np.asarray(values, dtype=float)
        arr = arr[np.isfinite(arr)]
        if arr.size == 0:
            return None
        return float(arr.mean())
