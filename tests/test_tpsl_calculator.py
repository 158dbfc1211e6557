import pytest

from circuit_breaker import ErrorTracker
from conftest import T0, make_bar
from regime_engine import Liquidity, MarketRegime, Trend, Volatility
from settings import MetaSettings
from tpsl_calculator import (
    BIAS_BEARISH, BIAS_BULLISH, BIAS_NEUTRAL, DynamicRiskCalculator, RiskParams,
    directional_bias,
)

BASE = RiskParams(stop_loss_pct=1.5, profit_target_pct=2.0, position_size_pct=10.0)


def _compute(regime, bias=BIAS_NEUTRAL, base=BASE, errors=None):
    calc = DynamicRiskCalculator(MetaSettings())
    return calc.compute(base, regime, bias, errors or ErrorTracker(), T0)


def test_normal_regime_keeps_base():
    assert _compute(MarketRegime()) == BASE


def test_high_volatility_aligned_bearish():
    regime = MarketRegime(volatility=Volatility.HIGH, trend=Trend.BEARISH)
    params = _compute(regime, BIAS_BEARISH)
    assert params.stop_loss_pct == pytest.approx(1.5 * 1.3)
    assert params.profit_target_pct == pytest.approx(2.0 * 1.5 * 1.2)
    assert params.position_size_pct == pytest.approx(10.0 * 0.7 * 1.1)


def test_counter_trend_is_conservative():
    regime = MarketRegime(trend=Trend.BULLISH)
    for bias in (BIAS_BEARISH, BIAS_NEUTRAL):
        params = _compute(regime, bias)
        assert params.stop_loss_pct == pytest.approx(1.35)
        assert params.profit_target_pct == pytest.approx(2.0)
        assert params.position_size_pct == pytest.approx(9.0)


def test_low_volatility_low_liquidity():
    regime = MarketRegime(volatility=Volatility.LOW, liquidity=Liquidity.LOW)
    params = _compute(regime)
    assert params.stop_loss_pct == pytest.approx(1.2)
    assert params.profit_target_pct == pytest.approx(1.6)
    assert params.position_size_pct == pytest.approx(10.0 * 1.2 * 0.8)


def test_results_are_clamped():
    regime = MarketRegime(volatility=Volatility.HIGH, trend=Trend.BULLISH, liquidity=Liquidity.LOW)
    params = _compute(regime, BIAS_BULLISH, RiskParams(10.0, 9.0, 2.0))
    assert params.stop_loss_pct == 5.0
    assert params.profit_target_pct == 10.0
    assert params.position_size_pct == 5.0

    tiny = _compute(MarketRegime(volatility=Volatility.LOW), base=RiskParams(0.2, 0.5, 30.0))
    assert tiny.stop_loss_pct == 0.5
    assert tiny.profit_target_pct == 1.0
    assert tiny.position_size_pct == 20.0


def test_cache_dropped_on_regime_change():
    calc = DynamicRiskCalculator(MetaSettings())
    errors = ErrorTracker()
    regime = MarketRegime()
    calc.compute(BASE, regime, BIAS_NEUTRAL, errors, T0)
    calc.compute(BASE, regime, BIAS_NEUTRAL, errors, T0)
    assert calc.cache_hits == 1

    regime.set(volatility=Volatility.HIGH)
    params = calc.compute(BASE, regime, BIAS_NEUTRAL, errors, T0)
    assert params.stop_loss_pct == pytest.approx(1.95)
    assert calc.cache_misses == 2


def test_invalid_base_falls_back_and_records():
    errors = ErrorTracker()
    bad = RiskParams(float("nan"), 2.0, 10.0)
    assert _compute(MarketRegime(), base=bad, errors=errors) is bad
    assert errors.stats.risk_management == 1


def test_confidence_scaled_size():
    calc = DynamicRiskCalculator(MetaSettings())
    assert calc.scale_size(10.0, 10.0) == pytest.approx(10.0)
    assert calc.scale_size(10.0, 0.0) == pytest.approx(5.0)
    assert calc.scale_size(10.0, 6.0) == pytest.approx(8.0)
    assert calc.scale_size(10.0, 10.0, size_multiplier=0.7) == pytest.approx(7.0)

    flat = DynamicRiskCalculator(MetaSettings(position_size_scaling=False))
    assert flat.scale_size(10.0, 2.0) == 10.0


def test_directional_bias():
    assert directional_bias(make_bar(100.0, ema_fast=101.0, ema_slow=100.0, adx=30.0), 25.0) == BIAS_BULLISH
    assert directional_bias(make_bar(100.0, ema_fast=99.0, ema_slow=100.0, adx=30.0), 25.0) == BIAS_BEARISH
    assert directional_bias(make_bar(100.0, ema_fast=99.0, ema_slow=100.0), 25.0) == BIAS_NEUTRAL
