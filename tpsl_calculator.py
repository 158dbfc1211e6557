# ============================================================================
# tpsl_calculator.py
# ============================================================================
"""
Dynamic Risk Calculator
=======================

SCALING:
  - Base stop-loss / profit-target percentages come from the selected
    pattern; base position size from the risk section.
  - Volatility:  HIGH → stop×1.3 target×1.5 size×0.7
                 LOW  → stop×0.8 target×0.8 size×1.2
  - Trend:       aligned with the bar's directional bias → target×1.2 size×1.1
                 non-neutral and opposed                → stop×0.9  size×0.9
  - Liquidity:   LOW → size×0.8

CLAMPS:
  - stop ∈ [0.5, 5.0]%   target ∈ [1.0, 10.0]%   size ∈ [5.0, 20.0]%

CACHE:
  - Results are memoised per (base, bias) and dropped whenever the
    regime's structural key changes.

FAILURE:
  - Any fault is recorded as risk_management and the base parameters are
    returned unchanged.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Tuple

import config
from circuit_breaker import ErrorCategory, ErrorTracker, RiskManagementError
from market_data import Bar, is_num
from regime_engine import Liquidity, MarketRegime, Trend
from settings import MetaSettings

logger = logging.getLogger(__name__)

BIAS_BULLISH = "bullish"
BIAS_BEARISH = "bearish"
BIAS_NEUTRAL = "neutral"


@dataclass(frozen=True)
class RiskParams:
    stop_loss_pct:     float
    profit_target_pct: float
    position_size_pct: float

    def to_dict(self) -> Dict:
        return asdict(self)


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    lo, hi = bounds
    return max(lo, min(hi, value))


def directional_bias(bar: Bar, adx_threshold: float) -> str:
    if bar.is_upward(adx_threshold):
        return BIAS_BULLISH
    if bar.is_downward(adx_threshold):
        return BIAS_BEARISH
    return BIAS_NEUTRAL


# ============================================================================
# CALCULATOR
# ============================================================================

class DynamicRiskCalculator:
    """
    Regime-adjusted risk parameters.

        calc = DynamicRiskCalculator(settings.meta)
        params = calc.compute(base, ctx.regime, bias, ctx.errors, now_ms)
    """

    def __init__(self, settings: MetaSettings):
        self.position_size_scaling = settings.position_size_scaling
        self._cache_key: Optional[Tuple[str, str, str]] = None
        self._cache: Dict[Tuple[RiskParams, str], RiskParams] = {}
        self.cache_hits = 0
        self.cache_misses = 0

    # ────────────────────────────────────────────────────────────────────────
    # REGIME SCALING
    # ────────────────────────────────────────────────────────────────────────

    def compute(self, base: RiskParams, regime: MarketRegime, bias: str,
                errors: ErrorTracker, now_ms: int) -> RiskParams:
        try:
            if regime.key != self._cache_key:
                self._cache.clear()
                self._cache_key = regime.key

            cached = self._cache.get((base, bias))
            if cached is not None:
                self.cache_hits += 1
                return cached

            self.cache_misses += 1
            params, meta = self._scale(base, regime, bias)
            self._cache[(base, bias)] = params
            logger.debug(
                f"Dynamic risk [{'/'.join(regime.key)} bias={bias}]: "
                f"SL {base.stop_loss_pct:.2f}→{params.stop_loss_pct:.2f}% | "
                f"TP {base.profit_target_pct:.2f}→{params.profit_target_pct:.2f}% | "
                f"size {base.position_size_pct:.1f}→{params.position_size_pct:.1f}% {meta}")
            return params
        except Exception as e:
            logger.error(f"❌ Dynamic risk calculation failed: {e}", exc_info=True)
            errors.record(ErrorCategory.RISK_MANAGEMENT, f"Dynamic risk error: {e}", now_ms)
            return base

    @staticmethod
    def _scale(base: RiskParams, regime: MarketRegime, bias: str) -> Tuple[RiskParams, Dict]:
        for name, value in asdict(base).items():
            if not is_num(value) or value <= 0:
                raise RiskManagementError(f"invalid base {name}={value}")

        stop, target, size = base.stop_loss_pct, base.profit_target_pct, base.position_size_pct
        applied = []

        vs, vt, vz = config.VOLATILITY_MULTIPLIERS[regime.volatility.value]
        stop, target, size = stop * vs, target * vt, size * vz
        if (vs, vt, vz) != (1.0, 1.0, 1.0):
            applied.append(f"vol_{regime.volatility.value}")

        if regime.trend is not Trend.NEUTRAL:
            if regime.trend.value == bias:
                ms, mt, mz = config.TREND_ALIGNED_MULTIPLIERS
                applied.append("trend_aligned")
            else:
                ms, mt, mz = config.TREND_OPPOSED_MULTIPLIERS
                applied.append("trend_opposed")
            stop, target, size = stop * ms, target * mt, size * mz

        if regime.liquidity is Liquidity.LOW:
            size *= config.LOW_LIQUIDITY_SIZE_MULT
            applied.append("low_liquidity")

        params = RiskParams(
            stop_loss_pct=_clamp(stop, config.STOP_LOSS_BOUNDS),
            profit_target_pct=_clamp(target, config.PROFIT_TARGET_BOUNDS),
            position_size_pct=_clamp(size, config.POSITION_SIZE_BOUNDS),
        )
        return params, {"applied": applied}

    # ────────────────────────────────────────────────────────────────────────
    # CONFIDENCE SIZING
    # ────────────────────────────────────────────────────────────────────────

    def scale_size(self, size_pct: float, confidence: float,
                   size_multiplier: float = 1.0) -> float:
        """min + (size − min) × confidence/10, min = half of size."""
        if self.position_size_scaling:
            min_size = size_pct * config.MIN_SIZE_FRACTION_OF_BASE
            size_pct = min_size + (size_pct - min_size) * confidence / config.CONFIDENCE_MAX
        return size_pct * size_multiplier

    def get_stats(self) -> Dict:
        return {
            "cache_key": self._cache_key,
            "cache_entries": len(self._cache),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
        }
