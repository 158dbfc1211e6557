# ============================================================================
# position_manager.py
# ============================================================================
"""
Position Manager
================

LIFECYCLE:
  - FLAT → ENTERED on a selected pattern; ENTERED → FLAT on any exit.
  - Entry sets entry price/time from the current candle, stop and target
    from the regime-scaled risk parameters, trailing disarmed.
  - Exit clears every entry field in one step (Position.clear()).

TRAILING STOP:
  - Arms once unrealized profit on close ≥ trailing_stop_activation_pct.
  - Ratchet enforced: the trailing price only ever moves up.
  - Updated AFTER exit evaluation, so a tick is judged against the
    levels that were in force when it opened.

EXITS (first match wins, at most one per tick):
  1. stop_loss       low ≤ stop
  2. trailing_stop   armed and low ≤ trailing stop
  3. profit_target   high ≥ target
  4. trend_reversal  entry pattern's own reversal condition
  5. macd_crossover  histogram flips positive → negative (optional)
  6. time_exit       held ≥ max_hold_periods and profit below the floor
  7. regime_change   volatility HIGH and trend differs from entry
  8. error_exit      calculation errors above threshold while in position
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Optional

from circuit_breaker import ErrorTracker
from market_data import Bar, is_num, pct_change
from patterns import DetectorSet, PatternResult
from regime_engine import MarketRegime, Volatility
from risk_manager import RiskManager, TradeRecord, TradeStats
from settings import LimitSettings, RiskSettings
from state_machine import PositionState, PositionStateMachine
from tpsl_calculator import RiskParams

logger = logging.getLogger(__name__)


# ============================================================================
# ENUMS & DATACLASSES
# ============================================================================

class ExitReason(str, Enum):
    STOP_LOSS      = "stop_loss"
    TRAILING_STOP  = "trailing_stop"
    PROFIT_TARGET  = "profit_target"
    TREND_REVERSAL = "trend_reversal"
    MACD_CROSSOVER = "macd_crossover"
    TIME_EXIT      = "time_exit"
    REGIME_CHANGE  = "regime_change"
    ERROR_EXIT     = "error_exit"


@dataclass
class Position:
    """
    The single position record of an instrument.

    entry_price / entry_time are set iff state is ENTERED.
    """
    state:               PositionState   = PositionState.FLAT
    trailing_active:     bool            = False
    entry_price:         Optional[float] = None
    entry_time:          Optional[int]   = None
    stop_price:          Optional[float] = None
    trailing_stop_price: Optional[float] = None
    profit_target_price: Optional[float] = None
    size_fraction:       Optional[float] = None
    active_pattern_name: Optional[str]   = None
    high_water_price:    Optional[float] = None
    confidence:          float           = 0.0
    entry_trend:         Optional[str]   = None
    bars_held:           int             = 0

    @property
    def is_entered(self) -> bool:
        return self.state is PositionState.ENTERED

    def unrealized_profit_pct(self, price: float) -> float:
        if not self.is_entered or not self.entry_price:
            return 0.0
        return pct_change(price, self.entry_price)

    def clear(self) -> None:
        """Back to FLAT with every entry field reset."""
        self.state = PositionState.FLAT
        self.trailing_active = False
        self.entry_price = None
        self.entry_time = None
        self.stop_price = None
        self.trailing_stop_price = None
        self.profit_target_price = None
        self.size_fraction = None
        self.active_pattern_name = None
        self.high_water_price = None
        self.confidence = 0.0
        self.entry_trend = None
        self.bars_held = 0

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Position":
        data = dict(data)
        data["state"] = PositionState(data.get("state", PositionState.FLAT.value))
        return cls(**data)


# ============================================================================
# POSITION MANAGER
# ============================================================================

class PositionManager:
    """Drives one Position through entry, trailing and exit."""

    def __init__(self, risk: RiskSettings, limits: LimitSettings,
                 detectors: DetectorSet, risk_manager: RiskManager):
        self.risk = risk
        self.limits = limits
        self.detectors = detectors
        self.risk_manager = risk_manager
        self.machine = PositionStateMachine()

    def sync(self, position: Position) -> None:
        """Align the lifecycle machine with a restored position."""
        if self.machine.state is not position.state:
            self.machine.force_state(position.state.value, "restore")

    # ========================================================================
    # ENTRY
    # ========================================================================

    def open_position(self, position: Position, bar: Bar, pattern: PatternResult,
                      params: RiskParams, size_pct: float,
                      regime: MarketRegime) -> Position:
        """
        Enter at the current close.

        Raises:
            ValueError: if already entered or the entry price is invalid.
        """
        if position.is_entered:
            raise ValueError(
                f"Cannot open position: {position.active_pattern_name} position still active")

        entry = bar.candle.close
        if not is_num(entry) or entry <= 0:
            raise ValueError(f"Invalid entry_price: {entry}")

        self.machine.transition(PositionState.ENTERED.value, bar.candle.time_ms,
                                reason=pattern.name)

        position.state = PositionState.ENTERED
        position.entry_price = entry
        position.entry_time = bar.candle.time_ms
        position.stop_price = entry * (1 - params.stop_loss_pct / 100)
        position.profit_target_price = entry * (1 + params.profit_target_pct / 100)
        position.size_fraction = size_pct / 100
        position.trailing_active = False
        position.trailing_stop_price = None
        position.active_pattern_name = pattern.name
        position.high_water_price = entry
        position.confidence = pattern.confidence
        position.entry_trend = regime.trend.value
        position.bars_held = 0

        logger.info("=" * 70)
        logger.info(f"📊 ENTRY: {pattern.name.upper()} (conf {pattern.confidence:.1f}) @ {entry:.8f}")
        logger.info(f"   SL: {position.stop_price:.8f} ({params.stop_loss_pct:.2f}%) | "
                    f"TP: {position.profit_target_price:.8f} ({params.profit_target_pct:.2f}%)")
        logger.info(f"   Size: {size_pct:.2f}% | Regime: {'/'.join(regime.key)}")
        logger.info("=" * 70)
        return position

    # ========================================================================
    # PER-TICK MANAGEMENT
    # ========================================================================

    def on_bar(self, position: Position, bar: Bar, prev_bar: Optional[Bar],
               regime: MarketRegime, errors: ErrorTracker) -> Optional[ExitReason]:
        """Exit check against standing levels, then trailing update if still open."""
        position.bars_held += 1
        reason = self.evaluate_exit(position, bar, prev_bar, regime, errors)
        if reason is None:
            self.update_trailing(position, bar)
            if position.high_water_price is None or bar.candle.high > position.high_water_price:
                position.high_water_price = bar.candle.high
        return reason

    def evaluate_exit(self, position: Position, bar: Bar, prev_bar: Optional[Bar],
                      regime: MarketRegime, errors: ErrorTracker) -> Optional[ExitReason]:
        c = bar.candle

        if c.low <= position.stop_price:
            return ExitReason.STOP_LOSS

        if position.trailing_active and c.low <= position.trailing_stop_price:
            return ExitReason.TRAILING_STOP

        if c.high >= position.profit_target_price:
            return ExitReason.PROFIT_TARGET

        detector = self.detectors.get(position.active_pattern_name)
        if detector is not None and detector.reversal_exit(bar, regime):
            return ExitReason.TREND_REVERSAL

        if self.limits.exit_on_macd_cross and prev_bar is not None:
            hist, prev_hist = bar.indicators.macd_histogram, prev_bar.indicators.macd_histogram
            if is_num(hist) and is_num(prev_hist) and hist < 0 < prev_hist:
                return ExitReason.MACD_CROSSOVER

        if (position.bars_held >= self.limits.max_hold_periods
                and position.unrealized_profit_pct(c.close) < self.limits.minor_profit_floor_pct):
            return ExitReason.TIME_EXIT

        if regime.volatility is Volatility.HIGH and regime.trend.value != position.entry_trend:
            return ExitReason.REGIME_CHANGE

        if errors.stats.calculation > self.limits.error_exit_threshold:
            return ExitReason.ERROR_EXIT

        return None

    def update_trailing(self, position: Position, bar: Bar) -> bool:
        """Arm or ratchet the trailing stop. Returns True when it moved."""
        close = bar.candle.close
        candidate = close * (1 - self.risk.trailing_stop_pct / 100)

        if not position.trailing_active:
            if position.unrealized_profit_pct(close) >= self.risk.trailing_stop_activation_pct:
                position.trailing_active = True
                position.trailing_stop_price = candidate
                logger.info(f"🎯 Trailing stop activated at {candidate:.8f}")
                return True
            return False

        if candidate > position.trailing_stop_price:
            logger.debug(f"Trailing stop raised {position.trailing_stop_price:.8f} → {candidate:.8f}")
            position.trailing_stop_price = candidate
            return True
        return False

    # ========================================================================
    # EXIT
    # ========================================================================

    def exit_price(self, position: Position, bar: Bar, reason: ExitReason) -> float:
        if reason is ExitReason.STOP_LOSS:
            return position.stop_price
        if reason is ExitReason.TRAILING_STOP:
            return position.trailing_stop_price
        if reason is ExitReason.PROFIT_TARGET:
            return position.profit_target_price
        return bar.candle.close

    def close_position(self, position: Position, bar: Bar, reason: ExitReason,
                       regime: MarketRegime, stats: TradeStats) -> TradeRecord:
        price = self.exit_price(position, bar, reason)
        profit_pct = pct_change(price, position.entry_price)

        trade = TradeRecord(
            pattern=position.active_pattern_name or "",
            entry_time=position.entry_time,
            exit_time=bar.candle.time_ms,
            entry_price=position.entry_price,
            exit_price=price,
            profit_pct=profit_pct,
            is_win=profit_pct > 0,
            duration_ms=bar.candle.time_ms - position.entry_time,
            bars_held=position.bars_held,
            reason=reason.value,
            confidence=position.confidence,
            regime=regime.to_dict(),
        )

        self.machine.transition(PositionState.FLAT.value, bar.candle.time_ms, reason=reason.value)
        position.clear()
        self.risk_manager.record_trade(stats, trade)

        emoji = "✅" if trade.is_win else "❌"
        logger.info(
            f"{emoji} EXIT [{reason.value}] {trade.pattern} @ {price:.8f} "
            f"(entry {trade.entry_price:.8f}) {profit_pct:+.2f}% after {trade.bars_held} bars")
        return trade
