"""
patterns.py — Price-action pattern detectors
=============================================
Each detector looks at the bar window (oldest first, ``bars[-1]`` is the
current tick) plus the current MarketRegime and returns a PatternResult:

  flash_crash      — sharp one-period drop after a run of red candles
  post_stagnation  — decline out of a low-volatility squeeze, then a bounce
  unsteady_decline — choppy multi-candle decline with mixed candle colours
  oversold_rsi     — backup entry: RSI oversold in a downward bar (off by default)

Detectors run sequentially in DETECTOR_ORDER.  DetectorSet.run applies the
same fallback to every detector:

  PatternDetectionError → fail closed (detected=False, confidence=0)
  anything else         → previous tick's confidence kept, detected=False
  both                  → recorded as a pattern_detection error
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import config
from circuit_breaker import ErrorCategory, ErrorTracker, PatternDetectionError
from market_data import Bar, is_num, pct_change
from regime_engine import MarketRegime, Trend, Volatility
from settings import EngineSettings

logger = logging.getLogger(__name__)

DETECTOR_ORDER = ("flash_crash", "post_stagnation", "unsteady_decline", "oversold_rsi")


def clamp_confidence(value: float) -> float:
    if not is_num(value):
        return config.CONFIDENCE_MIN
    return max(config.CONFIDENCE_MIN, min(config.CONFIDENCE_MAX, float(value)))


# ============================================================================
# RESULT
# ============================================================================

@dataclass
class PatternResult:
    name:              str
    detected:          bool  = False
    confidence:        float = 0.0
    stop_loss_pct:     float = 0.0
    profit_target_pct: float = 0.0
    size_multiplier:   float = 1.0
    metadata:          Dict  = field(default_factory=dict)

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "detected": self.detected,
            "confidence": self.confidence,
            "stop_loss_pct": self.stop_loss_pct,
            "profit_target_pct": self.profit_target_pct,
            "size_multiplier": self.size_multiplier,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PatternResult":
        return cls(
            name=data["name"],
            detected=bool(data.get("detected", False)),
            confidence=float(data.get("confidence", 0.0)),
            stop_loss_pct=float(data.get("stop_loss_pct", 0.0)),
            profit_target_pct=float(data.get("profit_target_pct", 0.0)),
            size_multiplier=float(data.get("size_multiplier", 1.0)),
            metadata=dict(data.get("metadata") or {}),
        )


# ============================================================================
# BASE
# ============================================================================

class PatternDetector:
    """Common contract; subclasses implement ``_detect`` and ``reversal_exit``."""

    name = ""

    def __init__(self, cfg, adx_threshold: float):
        self.cfg = cfg
        self.adx_threshold = adx_threshold

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled)

    @property
    def min_history(self) -> int:
        return 1

    @property
    def stop_loss_pct(self) -> float:
        return self.cfg.stop_loss_pct

    @property
    def profit_target_pct(self) -> float:
        return self.cfg.profit_target_pct

    def result(self, detected: bool = False, confidence: float = 0.0,
               metadata: Optional[Dict] = None) -> PatternResult:
        return PatternResult(
            name=self.name,
            detected=detected,
            confidence=confidence if detected else 0.0,
            stop_loss_pct=self.stop_loss_pct,
            profit_target_pct=self.profit_target_pct,
            metadata=metadata or {},
        )

    def detect(self, bars: List[Bar], regime: MarketRegime) -> PatternResult:
        """Disabled or still warming up → not detected, no error."""
        if not self.enabled or len(bars) < self.min_history:
            return self.result()
        return self._detect(bars, regime)

    def _detect(self, bars: List[Bar], regime: MarketRegime) -> PatternResult:
        raise NotImplementedError

    def reversal_exit(self, bar: Bar, regime: MarketRegime) -> bool:
        """True when a position opened on this pattern should be abandoned."""
        return False

    def _prices(self, *values: float) -> None:
        for value in values:
            if not is_num(value) or value <= 0:
                raise PatternDetectionError(f"Invalid price data for {self.name}: {value}")


# ============================================================================
# FLASH CRASH
# ============================================================================

class FlashCrashDetector(PatternDetector):
    name = "flash_crash"

    @property
    def min_history(self) -> int:
        return max(self.cfg.decline_periods + 1, self.cfg.consecutive_red_candles)

    def _detect(self, bars: List[Bar], regime: MarketRegime) -> PatternResult:
        cfg = self.cfg
        cur, prev = bars[-1], bars[-2]
        ref_close = bars[-1 - cfg.decline_periods].candle.close
        self._prices(cur.candle.close, ref_close)

        change_pct = pct_change(cur.candle.close, ref_close)

        consecutive_red = 0
        for bar in reversed(bars):
            if not bar.candle.is_red():
                break
            consecutive_red += 1

        detected = (change_pct <= -cfg.flash_crash_pct
                    and consecutive_red >= cfg.consecutive_red_candles)
        if not detected:
            return self.result()

        confidence = min(4.0, abs(change_pct) / cfg.flash_crash_pct * 4.0)

        volume_spike = (prev.candle.volume > 0
                        and cur.candle.volume > prev.candle.volume * config.FLASH_CRASH_VOLUME_SPIKE)
        if volume_spike:
            confidence += 2

        atr, prev_atr = cur.indicators.atr, prev.indicators.atr
        if is_num(atr) and is_num(prev_atr) and atr > prev_atr * config.FLASH_CRASH_ATR_RISE:
            confidence += 1

        rsi = cur.indicators.rsi
        if is_num(rsi) and rsi < cfg.rsi_oversold:
            confidence += 1

        if regime.volatility is Volatility.HIGH and regime.trend is Trend.BEARISH:
            confidence += 1
        if regime.volatility is Volatility.LOW:
            confidence -= 1

        return self.result(True, confidence, {
            "price_change_pct": change_pct,
            "consecutive_red": consecutive_red,
            "volume_spike": volume_spike,
        })

    def reversal_exit(self, bar: Bar, regime: MarketRegime) -> bool:
        return bar.is_upward(self.adx_threshold)


# ============================================================================
# POST STAGNATION
# ============================================================================

class PostStagnationDetector(PatternDetector):
    name = "post_stagnation"

    @property
    def min_history(self) -> int:
        return config.POST_STAGNATION_SEARCH_CANDLES + 1

    def _stagnant(self, bar: Bar) -> bool:
        return bar.is_stagnation(self.cfg.stagnation_adx_max, self.cfg.stagnation_threshold)

    def _detect(self, bars: List[Bar], regime: MarketRegime) -> PatternResult:
        cfg = self.cfg
        n = len(bars)

        # stagnant candle followed by a non-stagnant one, within the search window
        end_idx = None
        for offset in range(2, config.POST_STAGNATION_SEARCH_CANDLES + 1):
            if self._stagnant(bars[n - 1 - offset]) and not self._stagnant(bars[n - offset]):
                end_idx = n - 1 - offset
                break
        if end_idx is None:
            return self.result()

        cur = bars[-1]
        ref_close = bars[end_idx + 1].candle.close
        self._prices(cur.candle.close, ref_close)
        decline_pct = pct_change(cur.candle.close, ref_close)

        recent_low = min(b.candle.low for b in bars[-3:])
        self._prices(recent_low)
        bounce_pct = pct_change(cur.candle.close, recent_low)
        recovery_attempt = bounce_pct >= cfg.recovery_threshold

        if not (decline_pct <= -cfg.min_decline_pct and recovery_attempt):
            return self.result()

        confidence = 5.0

        widths = [b.indicators.bb_width for b in bars[max(0, end_idx - 2):end_idx + 1]
                  if is_num(b.indicators.bb_width)]
        avg_bb_width = sum(widths) / len(widths) if widths else None
        if avg_bb_width is not None and avg_bb_width < cfg.stagnation_threshold:
            confidence += 1

        if regime.volatility is Volatility.LOW and regime.trend is Trend.NEUTRAL:
            confidence += 1

        return self.result(True, confidence, {
            "decline_pct": decline_pct,
            "bounce_pct": bounce_pct,
            "stagnation_end_offset": n - 1 - end_idx,
            "avg_bb_width": avg_bb_width,
        })

    def reversal_exit(self, bar: Bar, regime: MarketRegime) -> bool:
        return bar.is_downward(self.adx_threshold)


# ============================================================================
# UNSTEADY DECLINE
# ============================================================================

class UnsteadyDeclineDetector(PatternDetector):
    name = "unsteady_decline"

    @property
    def min_history(self) -> int:
        return self.cfg.lookback_candles + 1

    def _detect(self, bars: List[Bar], regime: MarketRegime) -> PatternResult:
        cfg = self.cfg
        lookback = cfg.lookback_candles
        cur = bars[-1]
        start_close = bars[-1 - lookback].candle.close
        self._prices(cur.candle.close, start_close)

        decline_pct = pct_change(cur.candle.close, start_close)
        if not (-cfg.max_decline_pct <= decline_pct <= -cfg.min_decline_pct):
            return self.result()

        window = bars[-lookback:]
        up = sum(1 for b in window if b.candle.is_green())
        down = sum(1 for b in window if b.candle.is_red())

        if not (down > up and up >= lookback * cfg.min_up_candle_ratio):
            return self.result()

        confidence = 5.0

        divergence = False
        span = cfg.divergence_lookback
        if len(bars) > span:
            ref = bars[-1 - span]
            rsi, ref_rsi = cur.indicators.rsi, ref.indicators.rsi
            if is_num(rsi) and is_num(ref_rsi) and ref.candle.close > 0:
                divergence = (pct_change(cur.candle.close, ref.candle.close) < 0
                              and rsi > ref_rsi)
        if divergence:
            confidence += 2

        if regime.volatility is Volatility.NORMAL and regime.trend is Trend.BEARISH:
            confidence += 1

        return self.result(True, confidence, {
            "decline_pct": decline_pct,
            "up_candles": up,
            "down_candles": down,
            "up_candle_ratio": up / lookback,
            "rsi_divergence": divergence,
        })

    def reversal_exit(self, bar: Bar, regime: MarketRegime) -> bool:
        adx = bar.indicators.adx
        return bar.is_downward(self.adx_threshold) and is_num(adx) and adx > self.cfg.reversal_adx


# ============================================================================
# OVERSOLD RSI (backup entry)
# ============================================================================

class OversoldRsiDetector(PatternDetector):
    name = "oversold_rsi"

    def __init__(self, cfg, adx_threshold: float, base_stop_pct: float, base_target_pct: float):
        super().__init__(cfg, adx_threshold)
        self._stop_pct = base_stop_pct
        self._target_pct = base_target_pct

    @property
    def min_history(self) -> int:
        return 2

    @property
    def stop_loss_pct(self) -> float:
        return self._stop_pct

    @property
    def profit_target_pct(self) -> float:
        return self._target_pct

    def result(self, detected: bool = False, confidence: float = 0.0,
               metadata: Optional[Dict] = None) -> PatternResult:
        res = super().result(detected, confidence, metadata)
        res.size_multiplier = self.cfg.size_multiplier
        return res

    def _detect(self, bars: List[Bar], regime: MarketRegime) -> PatternResult:
        cur, prev = bars[-1], bars[-2]
        self._prices(cur.candle.close)
        rsi = cur.indicators.rsi
        if not is_num(rsi):
            return self.result()
        if not (rsi <= self.cfg.rsi_oversold and cur.is_downward(self.adx_threshold)):
            return self.result()

        confidence = 6.0
        if rsi < self.cfg.rsi_oversold - self.cfg.deep_offset:
            confidence += 1
        hist, prev_hist = cur.indicators.macd_histogram, prev.indicators.macd_histogram
        if is_num(hist) and is_num(prev_hist) and hist > prev_hist:
            confidence += 1

        return self.result(True, confidence, {"rsi": rsi})

    def reversal_exit(self, bar: Bar, regime: MarketRegime) -> bool:
        return bar.is_upward(self.adx_threshold)


# ============================================================================
# DETECTOR SET
# ============================================================================

class DetectorSet:
    """Ordered detector list with a uniform fallback combinator."""

    def __init__(self, settings: EngineSettings):
        adx = settings.meta.trend_adx_threshold
        built = {
            "flash_crash": FlashCrashDetector(settings.flash_crash, adx),
            "post_stagnation": PostStagnationDetector(settings.post_stagnation, adx),
            "unsteady_decline": UnsteadyDeclineDetector(settings.unsteady_decline, adx),
            "oversold_rsi": OversoldRsiDetector(
                settings.oversold_rsi, adx,
                settings.risk.stop_loss_pct, settings.risk.profit_target_pct),
        }
        self.detectors: List[PatternDetector] = [built[name] for name in DETECTOR_ORDER]

    def get(self, name: Optional[str]) -> Optional[PatternDetector]:
        for det in self.detectors:
            if det.name == name:
                return det
        return None

    def run(self, bars: List[Bar], regime: MarketRegime,
            previous: Dict[str, PatternResult], errors: ErrorTracker,
            now_ms: int) -> Dict[str, PatternResult]:
        """Evaluate every detector in order; never raises."""
        results: Dict[str, PatternResult] = {}
        for det in self.detectors:
            try:
                results[det.name] = det.detect(bars, regime)
            except PatternDetectionError as e:
                errors.record(ErrorCategory.PATTERN_DETECTION, f"{det.name}: {e}", now_ms)
                results[det.name] = det.result()
            except Exception as e:
                logger.error(f"❌ {det.name} detector failed: {e}", exc_info=True)
                errors.record(ErrorCategory.PATTERN_DETECTION, f"{det.name} error: {e}", now_ms)
                prev = previous.get(det.name)
                fallback = det.result()
                fallback.confidence = prev.confidence if prev is not None else 0.0
                fallback.metadata = {"fallback": True}
                results[det.name] = fallback
        return results
