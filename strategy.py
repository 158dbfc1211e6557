"""
Pattern Meta-Strategy - per-tick decision engine
================================================
One tick = one candle record = one full pass:

  1. parse + validate the record          (bad data → recorded, "none")
  2. append to the bar history
  3. circuit breaker paused?              (→ "none", nothing else runs)
  4. roll the daily trade counter
  5. regime update (throttled)
  6. detectors in fixed order (uniform fallback)
  7. meta-decision arbiter
  8. FLAT    → entry when a pattern is selected and every gate passes
     ENTERED → layered exit evaluation, else trailing-stop update

All mutable per-instrument state lives in EngineContext, which is passed
explicitly to every component and round-trips through snapshot()/restore().
Time is candle time; nothing in here reads the wall clock or does I/O.
Trade events are handed to an optional publisher that must not block.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional

from circuit_breaker import (
    DataValidationError, ErrorCategory, ErrorStats, ErrorTracker,
)
from market_data import Bar, BarHistory, bar_from_record, validate_candle
from meta_arbiter import decide, summarize
from patterns import DetectorSet, PatternResult
from position_manager import Position, PositionManager
from regime_engine import MarketRegime, RegimeEngine
from risk_manager import DailyTradeCounter, RiskManager, TradeStats
from settings import EngineSettings
from tpsl_calculator import DynamicRiskCalculator, RiskParams, directional_bias

logger = logging.getLogger(__name__)

SIGNAL_BUY  = "buy"
SIGNAL_SELL = "sell"
SIGNAL_NONE = "none"

SNAPSHOT_VERSION = 1


# =============================================================================
# OUTPUT
# =============================================================================

@dataclass
class Signal:
    signal:              str = SIGNAL_NONE
    time_ms:             Optional[int] = None
    stop_price:          Optional[float] = None
    profit_target_price: Optional[float] = None
    size_fraction:       Optional[float] = None
    active_pattern:      Optional[str] = None
    confidence:          Optional[float] = None
    reason:              Optional[str] = None

    def to_dict(self) -> Dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


# =============================================================================
# CONTEXT
# =============================================================================

@dataclass
class EngineContext:
    """Everything the engine mutates for one instrument."""
    errors:            ErrorTracker
    regime:            MarketRegime      = field(default_factory=MarketRegime)
    position:          Position          = field(default_factory=Position)
    daily:             DailyTradeCounter = field(default_factory=DailyTradeCounter)
    trade_stats:       TradeStats        = field(default_factory=TradeStats)
    history:           BarHistory        = field(default_factory=BarHistory)
    previous_results:  Dict[str, PatternResult] = field(default_factory=dict)
    open_positions:    int   = 0
    ticks:             int   = 0
    last_time_ms:      Optional[int] = None
    active_pattern:    Optional[str] = None
    active_confidence: float = 0.0

    @classmethod
    def new(cls, settings: EngineSettings) -> "EngineContext":
        return cls(errors=_tracker(settings))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "regime": self.regime.to_dict(),
            "position": self.position.to_dict(),
            "error_stats": self.errors.stats.to_dict(),
            "daily": self.daily.to_dict(),
            "trade_stats": self.trade_stats.to_dict(),
            "history": self.history.to_records(),
            "previous_results": {k: v.to_dict() for k, v in self.previous_results.items()},
            "open_positions": self.open_positions,
            "ticks": self.ticks,
            "last_time_ms": self.last_time_ms,
            "active_pattern": self.active_pattern,
            "active_confidence": self.active_confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], settings: EngineSettings) -> "EngineContext":
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version: {version}")
        return cls(
            errors=_tracker(settings, ErrorStats.from_dict(data.get("error_stats") or {})),
            regime=MarketRegime.from_dict(data.get("regime") or {}),
            position=Position.from_dict(data.get("position") or {}),
            daily=DailyTradeCounter.from_dict(data.get("daily") or {}),
            trade_stats=TradeStats.from_dict(data.get("trade_stats") or {}),
            history=BarHistory.from_records(data.get("history") or []),
            previous_results={k: PatternResult.from_dict(v)
                              for k, v in (data.get("previous_results") or {}).items()},
            open_positions=int(data.get("open_positions", 0)),
            ticks=int(data.get("ticks", 0)),
            last_time_ms=data.get("last_time_ms"),
            active_pattern=data.get("active_pattern"),
            active_confidence=float(data.get("active_confidence", 0.0)),
        )


def _tracker(settings: EngineSettings, stats: Optional[ErrorStats] = None) -> ErrorTracker:
    b = settings.breaker
    return ErrorTracker(pause_threshold=b.pause_threshold, pause_minutes=b.pause_minutes,
                        auto_pause=b.auto_pause, stats=stats)


# =============================================================================
# ENGINE
# =============================================================================

class PatternMetaStrategy:
    """
    Per-instrument decision engine.

        engine = PatternMetaStrategy(EngineSettings.from_mapping(flat))
        for record in feed:
            signal = engine.on_bar(record)
    """

    def __init__(self, settings: Optional[EngineSettings] = None,
                 publisher=None, context: Optional[EngineContext] = None):
        self.settings = settings or EngineSettings()
        self.publisher = publisher

        self.regime_engine = RegimeEngine(self.settings.meta)
        self.detectors     = DetectorSet(self.settings)
        self.risk_calc     = DynamicRiskCalculator(self.settings.meta)
        self.risk_manager  = RiskManager(self.settings.limits)
        self.positions     = PositionManager(
            self.settings.risk, self.settings.limits, self.detectors, self.risk_manager)

        self.ctx = context or EngineContext.new(self.settings)
        self.positions.sync(self.ctx.position)
        self.last_signal = Signal()
        self.last_report: Dict[str, Any] = {}
        self._outbox: List[tuple] = []

        meta = self.settings.meta
        logger.info(
            f"✅ PatternMetaStrategy ready: mode={meta.decision_mode} "
            f"min_conf={meta.min_confidence_threshold} "
            f"regime_filter={'ON' if meta.enable_regime_filter else 'OFF'} | detectors: "
            + ", ".join(d.name for d in self.detectors.detectors if d.enabled))

    # =========================================================================
    # ON BAR: main entry point, one call per closed candle
    # =========================================================================

    def on_bar(self, record: Dict[str, Any]) -> Signal:
        ctx = self.ctx

        # ── Parse / validate ─────────────────────────────────────────────────
        try:
            bar = bar_from_record(record)
            validate_candle(bar.candle, ctx.history.last_close,
                            self.settings.validation.max_price_jump_pct)
        except DataValidationError as e:
            now_ms = self._record_time(record)
            logger.warning(f"⚠️ Rejected candle: {e}")
            ctx.errors.record_fault(e, now_ms, "Price data: ")
            return self._emit(Signal(time_ms=now_ms, reason="invalid_data"))

        now_ms = bar.candle.time_ms
        ctx.history.append(bar)
        ctx.ticks += 1
        ctx.last_time_ms = now_ms

        # ── Circuit breaker ──────────────────────────────────────────────────
        if ctx.errors.is_paused(now_ms):
            ctx.active_pattern, ctx.active_confidence = None, 0.0
            return self._emit(Signal(time_ms=now_ms, reason="paused"))

        ctx.daily.roll(now_ms)

        # ── Regime / patterns / arbiter ──────────────────────────────────────
        bars = ctx.history.window()
        warmed_up = ctx.ticks > self.settings.meta.warmup_candles
        self.regime_engine.update(ctx.regime, bars[:-1], bar, now_ms, ctx.errors, warmed_up)

        results = self.detectors.run(bars, ctx.regime, ctx.previous_results, ctx.errors, now_ms)
        ctx.previous_results = results
        selected = decide(results, ctx.regime, self.settings.meta)
        ctx.active_pattern = selected.name if selected else None
        ctx.active_confidence = selected.confidence if selected else 0.0
        logger.debug(f"[{now_ms}] {summarize(results)} → {ctx.active_pattern}")

        # ── Position lifecycle ───────────────────────────────────────────────
        try:
            if ctx.position.is_entered:
                signal = self._manage_position(bar, now_ms)
            else:
                signal = self._evaluate_entry(bar, selected, now_ms)
        except Exception as e:
            logger.error(f"❌ Position stage error: {e}", exc_info=True)
            ctx.errors.record(ErrorCategory.RISK_MANAGEMENT, f"Position stage error: {e}", now_ms)
            signal = Signal(time_ms=now_ms, reason="risk_error")
            self._outbox.clear()

        # ── Hand-off: only after the signal is settled ───────────────────────
        self._emit(signal)
        events, self._outbox = self._outbox, []
        for kind, payload in events:
            self._publish(kind, payload)
        return signal

    def run(self, records: Iterable[Dict[str, Any]]) -> List[Signal]:
        return [self.on_bar(record) for record in records]

    # =========================================================================
    # ENTRY
    # =========================================================================

    def _evaluate_entry(self, bar: Bar, selected: Optional[PatternResult],
                        now_ms: int) -> Signal:
        ctx = self.ctx
        if selected is None:
            return Signal(time_ms=now_ms)

        ok, why = self.risk_manager.can_enter(
            now_ms, ctx.errors.is_paused(now_ms), ctx.daily, ctx.open_positions)
        if not ok:
            logger.debug(f"Entry blocked for {selected.name}: {why}")
            return Signal(time_ms=now_ms, active_pattern=selected.name,
                          confidence=selected.confidence, reason=why)

        bias = directional_bias(bar, self.settings.meta.trend_adx_threshold)
        base = RiskParams(
            stop_loss_pct=selected.stop_loss_pct,
            profit_target_pct=selected.profit_target_pct,
            position_size_pct=self.settings.risk.position_size_pct,
        )
        params = self.risk_calc.compute(base, ctx.regime, bias, ctx.errors, now_ms)
        size_pct = self.risk_calc.scale_size(
            params.position_size_pct, selected.confidence, selected.size_multiplier)

        pos = self.positions.open_position(
            ctx.position, bar, selected, params, size_pct, ctx.regime)
        ctx.open_positions += 1
        ctx.daily.count += 1

        signal = Signal(
            signal=SIGNAL_BUY,
            time_ms=now_ms,
            stop_price=pos.stop_price,
            profit_target_price=pos.profit_target_price,
            size_fraction=pos.size_fraction,
            active_pattern=selected.name,
            confidence=selected.confidence,
            reason="entry",
        )
        self._outbox.append(("entry", {"signal": signal.to_dict(), "risk": params.to_dict()}))
        return signal

    # =========================================================================
    # POSITION MANAGEMENT
    # =========================================================================

    def _manage_position(self, bar: Bar, now_ms: int) -> Signal:
        ctx = self.ctx
        reason = self.positions.on_bar(
            ctx.position, bar, ctx.history.previous, ctx.regime, ctx.errors)
        if reason is None:
            return Signal(time_ms=now_ms)

        trade = self.positions.close_position(
            ctx.position, bar, reason, ctx.regime, ctx.trade_stats)
        ctx.open_positions = max(0, ctx.open_positions - 1)
        self._outbox.append(("exit", {"trade": trade.to_dict()}))
        return Signal(
            signal=SIGNAL_SELL,
            time_ms=now_ms,
            active_pattern=trade.pattern,
            confidence=trade.confidence,
            reason=reason.value,
        )

    # =========================================================================
    # REPORTING
    # =========================================================================

    def report(self) -> Dict[str, Any]:
        """Read-only per-tick snapshot for dashboards / logs."""
        ctx = self.ctx
        price = ctx.history.last_close
        pos = ctx.position
        return {
            "time_ms": ctx.last_time_ms,
            "regime": {k: v for k, v in ctx.regime.to_dict().items()
                       if k in ("volatility", "trend", "liquidity")},
            "active_pattern": ctx.active_pattern,
            "confidence": ctx.active_confidence,
            "position_state": pos.state.value,
            "unrealized_profit_pct": pos.unrealized_profit_pct(price) if price else 0.0,
            "trailing_stop_price": pos.trailing_stop_price if pos.trailing_active else None,
            "error_counts": ctx.errors.stats.as_counts(),
            "paused": ctx.errors.stats.paused_until is not None,
        }

    def get_strategy_stats(self) -> Dict[str, Any]:
        ctx = self.ctx
        return {
            "ticks": ctx.ticks,
            "open_positions": ctx.open_positions,
            "daily_trades": ctx.daily.count,
            "regime_version": ctx.regime.version,
            "breaker": ctx.errors.get_stats(),
            "risk_cache": self.risk_calc.get_stats(),
            "trades": self.risk_manager.get_statistics(ctx.trade_stats),
        }

    # =========================================================================
    # SNAPSHOT / RESTORE
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy of the full engine context."""
        return self.ctx.to_dict()

    def restore(self, state: Dict[str, Any]) -> None:
        self.ctx = EngineContext.from_dict(state, self.settings)
        self.positions.sync(self.ctx.position)
        logger.info(
            f"🔄 Engine restored: {self.ctx.ticks} ticks, "
            f"position={self.ctx.position.state.value}, "
            f"errors={self.ctx.errors.stats.total}")

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _record_time(self, record: Any) -> int:
        try:
            return int(record.get("time_ms", record.get("time")))
        except (AttributeError, TypeError, ValueError):
            return self.ctx.last_time_ms or 0

    def _emit(self, signal: Signal) -> Signal:
        self.last_signal = signal
        self.last_report = self.report()
        return signal

    def _publish(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.publisher is None:
            return
        payload = dict(payload)
        payload["report"] = self.last_report
        try:
            self.publisher.publish(kind, payload)
        except Exception as e:
            # signal and position state stand even when the hand-off fails
            logger.error(f"❌ Publisher failed on '{kind}' event: {e}", exc_info=True)
