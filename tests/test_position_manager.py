import pytest

from circuit_breaker import ErrorCategory, ErrorTracker
from conftest import MINUTE, T0, make_bar
from patterns import DetectorSet, PatternResult
from position_manager import ExitReason, Position, PositionManager
from regime_engine import MarketRegime, Trend, Volatility
from risk_manager import RiskManager, TradeStats
from settings import EngineSettings
from state_machine import PositionState
from tpsl_calculator import RiskParams

PARAMS = RiskParams(stop_loss_pct=2.0, profit_target_pct=4.0, position_size_pct=10.0)


def _manager(**overrides):
    settings = EngineSettings.from_mapping(overrides)
    return PositionManager(settings.risk, settings.limits, DetectorSet(settings),
                           RiskManager(settings.limits))


def _open(manager, pattern="post_stagnation", regime=None):
    position = Position()
    pattern = PatternResult(pattern, detected=True, confidence=7.0)
    manager.open_position(position, make_bar(100.0, time_ms=T0), pattern, PARAMS, 8.0,
                          regime or MarketRegime())
    return position


def test_open_sets_levels():
    position = _open(_manager())
    assert position.state is PositionState.ENTERED
    assert position.entry_price == 100.0
    assert position.entry_time == T0
    assert position.stop_price == pytest.approx(98.0)
    assert position.profit_target_price == pytest.approx(104.0)
    assert position.size_fraction == pytest.approx(0.08)
    assert not position.trailing_active


def test_cannot_open_twice():
    manager = _manager()
    position = _open(manager)
    with pytest.raises(ValueError):
        manager.open_position(position, make_bar(100.0), PatternResult("flash_crash"), PARAMS,
                              8.0, MarketRegime())


def test_stop_loss_beats_profit_target():
    manager = _manager()
    position = _open(manager)
    wide = make_bar(100.0, high=105.0, low=97.0, time_ms=T0 + MINUTE)
    reason = manager.on_bar(position, wide, None, MarketRegime(), ErrorTracker())
    assert reason is ExitReason.STOP_LOSS


def test_profit_target_exit_records_trade():
    manager = _manager()
    position = _open(manager)
    stats = TradeStats()
    bar = make_bar(103.0, high=104.5, time_ms=T0 + 3 * MINUTE)
    reason = manager.on_bar(position, bar, None, MarketRegime(), ErrorTracker())
    assert reason is ExitReason.PROFIT_TARGET

    trade = manager.close_position(position, bar, reason, MarketRegime(), stats)
    assert trade.exit_price == pytest.approx(104.0)
    assert trade.profit_pct == pytest.approx(4.0)
    assert trade.is_win
    assert trade.duration_ms == 3 * MINUTE
    assert stats.total == 1
    assert position == Position()
    assert manager.machine.state is PositionState.FLAT


def test_trailing_stop_only_ratchets_up():
    manager = _manager()
    position = _open(manager)
    errors, regime = ErrorTracker(), MarketRegime()

    closes = [100.5, 101.5, 102.0, 101.2, 103.0, 102.4, 103.5]
    seen = []
    for i, close in enumerate(closes, 1):
        bar = make_bar(close, time_ms=T0 + i * MINUTE)
        assert manager.on_bar(position, bar, None, regime, errors) is None
        if position.trailing_active:
            seen.append(position.trailing_stop_price)

    assert seen == sorted(seen)
    assert seen[0] == pytest.approx(101.5 * 0.99)
    assert seen[-1] == pytest.approx(103.5 * 0.99)


def test_trailing_stop_exit():
    manager = _manager()
    position = _open(manager)
    errors, regime = ErrorTracker(), MarketRegime()
    manager.on_bar(position, make_bar(102.0, time_ms=T0 + MINUTE), None, regime, errors)
    assert position.trailing_active

    drop = make_bar(100.5, open_=101.5, time_ms=T0 + 2 * MINUTE)
    assert manager.on_bar(position, drop, None, regime, errors) is ExitReason.TRAILING_STOP
    assert manager.exit_price(position, drop, ExitReason.TRAILING_STOP) == pytest.approx(100.98)


def test_trend_reversal_uses_entry_pattern():
    manager = _manager()
    position = _open(manager, pattern="flash_crash")
    upward = make_bar(100.5, time_ms=T0 + MINUTE, ema_fast=101.0, ema_slow=100.0, adx=30.0)
    assert manager.on_bar(position, upward, None, MarketRegime(), ErrorTracker()) \
        is ExitReason.TREND_REVERSAL


def test_macd_cross_exit_when_enabled():
    manager = _manager(**{"limits.exit_on_macd_cross": True})
    position = _open(manager)
    prev = make_bar(100.0, time_ms=T0, macd_histogram=0.2)
    cur = make_bar(100.2, time_ms=T0 + MINUTE, macd_histogram=-0.1)
    assert manager.on_bar(position, cur, prev, MarketRegime(), ErrorTracker()) \
        is ExitReason.MACD_CROSSOVER


def test_time_exit_after_max_hold():
    manager = _manager(max_hold_periods=3)
    position = _open(manager)
    errors, regime = ErrorTracker(), MarketRegime()
    reasons = [manager.on_bar(position, make_bar(100.2, time_ms=T0 + i * MINUTE), None,
                              regime, errors) for i in (1, 2, 3)]
    assert reasons == [None, None, ExitReason.TIME_EXIT]


def test_regime_change_exit():
    manager = _manager()
    position = _open(manager, regime=MarketRegime(trend=Trend.BEARISH))
    regime = MarketRegime(volatility=Volatility.HIGH, trend=Trend.NEUTRAL)
    bar = make_bar(100.2, time_ms=T0 + MINUTE)
    assert manager.on_bar(position, bar, None, regime, ErrorTracker()) is ExitReason.REGIME_CHANGE


def test_error_exit():
    manager = _manager()
    position = _open(manager)
    errors = ErrorTracker(auto_pause=False)
    for _ in range(6):
        errors.record(ErrorCategory.CALCULATION, "nan atr", T0)
    bar = make_bar(100.2, time_ms=T0 + MINUTE)
    assert manager.on_bar(position, bar, None, MarketRegime(), errors) is ExitReason.ERROR_EXIT


def test_position_round_trip():
    position = _open(_manager())
    restored = Position.from_dict(position.to_dict())
    assert restored == position
    assert restored.state is PositionState.ENTERED
