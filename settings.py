"""
settings.py — Typed, validated engine configuration
====================================================
Builds an immutable EngineSettings from a flat ``section.key -> value`` map
(the shape a CLI, a JSON file or an optimiser hands us).

Validation happens once, here:
  - values are coerced to the type of the documented default
  - out-of-range / unparsable values are REJECTED with a warning and the
    default from config.py is used instead
  - unknown keys are logged and ignored

Bare keys are accepted for the meta / risk / limits sections
(``min_confidence_threshold`` == ``meta.min_confidence_threshold``).
"""

import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

import config

logger = logging.getLogger(__name__)


def _opt(default: Any, lo: Optional[float] = None, hi: Optional[float] = None,
         choices: Optional[Tuple] = None):
    """Dataclass field carrying its validation range."""
    return field(default=default, metadata={"min": lo, "max": hi, "choices": choices})


# ============================================================================
# SECTIONS
# ============================================================================

@dataclass(frozen=True)
class MetaSettings:
    decision_mode:                  str   = _opt(config.DECISION_MODE, choices=config.DECISION_MODES)
    min_confidence_threshold:       float = _opt(config.MIN_CONFIDENCE_THRESHOLD, 0.0, 10.0)
    min_confidence_difference:      float = _opt(config.MIN_CONFIDENCE_DIFFERENCE, 0.0, 10.0)
    enable_regime_filter:           bool  = _opt(config.ENABLE_REGIME_FILTER)
    position_size_scaling:          bool  = _opt(config.POSITION_SIZE_SCALING)
    trend_adx_threshold:            float = _opt(config.TREND_ADX_THRESHOLD, 0.0, 100.0)
    regime_update_interval_minutes: float = _opt(config.REGIME_UPDATE_INTERVAL_MINUTES, 0.0, 1440.0)
    regime_lookback:                int   = _opt(config.REGIME_LOOKBACK, 2, 200)
    warmup_candles:                 int   = _opt(config.WARMUP_CANDLES, 0, 10_000)


@dataclass(frozen=True)
class FlashCrashSettings:
    enabled:                 bool  = _opt(config.FLASH_CRASH_ENABLED)
    flash_crash_pct:         float = _opt(config.FLASH_CRASH_PCT, 0.1, 50.0)
    decline_periods:         int   = _opt(config.FLASH_CRASH_DECLINE_PERIODS, 1, 20)
    consecutive_red_candles: int   = _opt(config.FLASH_CRASH_CONSECUTIVE_RED, 1, 20)
    rsi_oversold:            float = _opt(config.FLASH_CRASH_RSI_OVERSOLD, 0.0, 100.0)
    stop_loss_pct:           float = _opt(config.FLASH_CRASH_STOP_LOSS_PCT, 0.1, 20.0)
    profit_target_pct:       float = _opt(config.FLASH_CRASH_PROFIT_TARGET_PCT, 0.1, 50.0)


@dataclass(frozen=True)
class PostStagnationSettings:
    enabled:              bool  = _opt(config.POST_STAGNATION_ENABLED)
    stagnation_threshold: float = _opt(config.POST_STAGNATION_BB_THRESHOLD, 0.001, 1.0)
    stagnation_adx_max:   float = _opt(config.POST_STAGNATION_ADX_MAX, 0.0, 100.0)
    recovery_threshold:   float = _opt(config.POST_STAGNATION_RECOVERY_PCT, 0.0, 50.0)
    min_decline_pct:      float = _opt(config.POST_STAGNATION_MIN_DECLINE_PCT, 0.1, 50.0)
    stop_loss_pct:        float = _opt(config.POST_STAGNATION_STOP_LOSS_PCT, 0.1, 20.0)
    profit_target_pct:    float = _opt(config.POST_STAGNATION_PROFIT_TARGET_PCT, 0.1, 50.0)


@dataclass(frozen=True)
class UnsteadyDeclineSettings:
    enabled:             bool  = _opt(config.UNSTEADY_DECLINE_ENABLED)
    lookback_candles:    int   = _opt(config.UNSTEADY_DECLINE_LOOKBACK, 4, config.HISTORY_MAXLEN - 1)
    min_decline_pct:     float = _opt(config.UNSTEADY_DECLINE_MIN_PCT, 0.1, 90.0)
    max_decline_pct:     float = _opt(config.UNSTEADY_DECLINE_MAX_PCT, 0.1, 90.0)
    min_up_candle_ratio: float = _opt(config.UNSTEADY_DECLINE_MIN_UP_RATIO, 0.0, 0.5)
    divergence_lookback: int   = _opt(config.UNSTEADY_DECLINE_DIVERGENCE_LOOKBACK, 1, config.HISTORY_MAXLEN - 1)
    reversal_adx:        float = _opt(config.UNSTEADY_DECLINE_REVERSAL_ADX, 0.0, 100.0)
    stop_loss_pct:       float = _opt(config.UNSTEADY_DECLINE_STOP_LOSS_PCT, 0.1, 20.0)
    profit_target_pct:   float = _opt(config.UNSTEADY_DECLINE_PROFIT_TARGET_PCT, 0.1, 50.0)


@dataclass(frozen=True)
class OversoldRsiSettings:
    """Backup entry; stop/target come from the base risk section."""
    enabled:         bool  = _opt(config.OVERSOLD_RSI_ENABLED)
    rsi_oversold:    float = _opt(config.OVERSOLD_RSI_LEVEL, 0.0, 100.0)
    deep_offset:     float = _opt(config.OVERSOLD_RSI_DEEP_OFFSET, 0.0, 50.0)
    size_multiplier: float = _opt(config.OVERSOLD_RSI_SIZE_MULTIPLIER, 0.1, 1.0)


@dataclass(frozen=True)
class RiskSettings:
    stop_loss_pct:                float = _opt(config.STOP_LOSS_PCT, 0.1, 20.0)
    profit_target_pct:            float = _opt(config.PROFIT_TARGET_PCT, 0.1, 50.0)
    position_size_pct:            float = _opt(config.POSITION_SIZE_PCT, 0.1, 100.0)
    trailing_stop_pct:            float = _opt(config.TRAILING_STOP_PCT, 0.05, 20.0)
    trailing_stop_activation_pct: float = _opt(config.TRAILING_STOP_ACTIVATION_PCT, 0.0, 50.0)


@dataclass(frozen=True)
class LimitSettings:
    max_open_positions:     int   = _opt(config.MAX_OPEN_POSITIONS, 1, 3)
    max_daily_trades:       int   = _opt(config.MAX_DAILY_TRADES, 1, 10_000)
    max_hold_periods:       int   = _opt(config.MAX_HOLD_PERIODS, 1, 1_000_000)
    minor_profit_floor_pct: float = _opt(config.MINOR_PROFIT_FLOOR_PCT, 0.0, 100.0)
    error_exit_threshold:   int   = _opt(config.ERROR_EXIT_THRESHOLD, 1, 10_000)
    exit_on_macd_cross:     bool  = _opt(config.EXIT_ON_MACD_CROSS)
    enable_time_filter:     bool  = _opt(config.ENABLE_TIME_FILTER)
    trading_hours_start:    int   = _opt(config.TRADING_HOURS_START, 0, 23)
    trading_hours_end:      int   = _opt(config.TRADING_HOURS_END, 1, 24)


@dataclass(frozen=True)
class BreakerSettings:
    auto_pause:      bool  = _opt(config.AUTO_PAUSE_ON_ERRORS)
    pause_threshold: int   = _opt(config.PAUSE_ERROR_THRESHOLD, 1, 10_000)
    pause_minutes:   float = _opt(config.PAUSE_MINUTES, 0.0, 1440.0)


@dataclass(frozen=True)
class ValidationSettings:
    max_price_jump_pct: float = _opt(config.MAX_PRICE_JUMP_PCT, 1.0, 10_000.0)


# ============================================================================
# AGGREGATE
# ============================================================================

_SECTIONS = {
    "meta":             MetaSettings,
    "flash_crash":      FlashCrashSettings,
    "post_stagnation":  PostStagnationSettings,
    "unsteady_decline": UnsteadyDeclineSettings,
    "oversold_rsi":     OversoldRsiSettings,
    "risk":             RiskSettings,
    "limits":           LimitSettings,
    "breaker":          BreakerSettings,
    "validation":       ValidationSettings,
}

# Sections whose keys may be given without a prefix
_BARE_KEY_SECTIONS = ("meta", "risk", "limits")


class SettingsError(ValueError):
    """A single value failed validation (caught inside from_mapping)."""


@dataclass(frozen=True)
class EngineSettings:
    meta:             MetaSettings            = field(default_factory=MetaSettings)
    flash_crash:      FlashCrashSettings      = field(default_factory=FlashCrashSettings)
    post_stagnation:  PostStagnationSettings  = field(default_factory=PostStagnationSettings)
    unsteady_decline: UnsteadyDeclineSettings = field(default_factory=UnsteadyDeclineSettings)
    oversold_rsi:     OversoldRsiSettings     = field(default_factory=OversoldRsiSettings)
    risk:             RiskSettings            = field(default_factory=RiskSettings)
    limits:           LimitSettings           = field(default_factory=LimitSettings)
    breaker:          BreakerSettings         = field(default_factory=BreakerSettings)
    validation:       ValidationSettings      = field(default_factory=ValidationSettings)

    @classmethod
    def from_mapping(cls, flat: Optional[Dict[str, Any]] = None) -> "EngineSettings":
        """
        Build settings from a flat map. Never raises for bad values:
        each rejected entry is logged and replaced by its default.
        """
        overrides: Dict[str, Dict[str, Any]] = {name: {} for name in _SECTIONS}

        for raw_key, raw_value in (flat or {}).items():
            section, key = _resolve_key(str(raw_key))
            if section is None:
                logger.warning(f"⚠️ Unknown setting ignored: {raw_key}")
                continue
            spec = {f.name: f for f in fields(_SECTIONS[section])}[key]
            try:
                overrides[section][key] = _coerce(spec, raw_value)
            except SettingsError as e:
                logger.warning(
                    f"⚠️ Rejected {section}.{key}={raw_value!r} ({e}); "
                    f"using default {spec.default!r}")

        built = {name: _SECTIONS[name](**values) for name, values in overrides.items()}

        # ── Cross-field checks ───────────────────────────────────────────────
        ud = built["unsteady_decline"]
        if ud.max_decline_pct < ud.min_decline_pct:
            logger.warning(
                f"⚠️ unsteady_decline.max_decline_pct ({ud.max_decline_pct}) < "
                f"min_decline_pct ({ud.min_decline_pct}); using defaults for both")
            built["unsteady_decline"] = replace(
                ud,
                min_decline_pct=config.UNSTEADY_DECLINE_MIN_PCT,
                max_decline_pct=config.UNSTEADY_DECLINE_MAX_PCT)

        lim = built["limits"]
        if lim.trading_hours_end <= lim.trading_hours_start:
            logger.warning(
                f"⚠️ limits.trading_hours_end ({lim.trading_hours_end}) <= "
                f"trading_hours_start ({lim.trading_hours_start}); using defaults")
            built["limits"] = replace(
                lim,
                trading_hours_start=config.TRADING_HOURS_START,
                trading_hours_end=config.TRADING_HOURS_END)

        return cls(**built)

    def to_mapping(self) -> Dict[str, Any]:
        """Flat ``section.key`` map; from_mapping(to_mapping()) is identity."""
        flat: Dict[str, Any] = {}
        for name in _SECTIONS:
            section = getattr(self, name)
            for f in fields(section):
                flat[f"{name}.{f.name}"] = getattr(section, f.name)
        return flat


# ============================================================================
# HELPERS
# ============================================================================

def _resolve_key(raw_key: str) -> Tuple[Optional[str], Optional[str]]:
    if "." in raw_key:
        section, key = raw_key.split(".", 1)
        cls = _SECTIONS.get(section)
        if cls is not None and key in {f.name for f in fields(cls)}:
            return section, key
        return None, None
    for section in _BARE_KEY_SECTIONS:
        if raw_key in {f.name for f in fields(_SECTIONS[section])}:
            return section, raw_key
    return None, None


_TRUE  = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _coerce(spec, value: Any) -> Any:
    kind = type(spec.default)
    meta = spec.metadata

    if kind is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise SettingsError("not a boolean")

    if kind is str:
        text = str(value).strip()
        if meta.get("choices") and text not in meta["choices"]:
            raise SettingsError(f"expected one of {meta['choices']}")
        return text

    try:
        number = float(value)
    except (TypeError, ValueError):
        raise SettingsError("not a number")
    if math.isnan(number) or math.isinf(number):
        raise SettingsError("not finite")
    if kind is int:
        if number != int(number):
            raise SettingsError("not an integer")
        number = int(number)

    lo, hi = meta.get("min"), meta.get("max")
    if lo is not None and number < lo:
        raise SettingsError(f"below minimum {lo}")
    if hi is not None and number > hi:
        raise SettingsError(f"above maximum {hi}")
    return number
