import json

import pytest

from conftest import MINUTE, T0, crash_records, flat_records, make_record
from settings import EngineSettings
from strategy import SIGNAL_BUY, SIGNAL_NONE, SIGNAL_SELL, PatternMetaStrategy

DAY = 24 * 60 * MINUTE


def _trade_cycle(start):
    """Quiet tape, a flash crash, then a bounce through the profit target."""
    records = flat_records(5, start=start)
    records += crash_records(start + 5 * MINUTE)
    records.append(make_record(97.5, time_ms=start + 8 * MINUTE))
    records.append(make_record(99.0, open_=97.5, time_ms=start + 9 * MINUTE))
    return records


def _engine(publisher=None, **overrides):
    flat = {"enable_regime_filter": False}
    flat.update(overrides)
    return PatternMetaStrategy(EngineSettings.from_mapping(flat), publisher=publisher)


class _Collector:
    def __init__(self):
        self.events = []

    def publish(self, kind, payload):
        self.events.append((kind, payload))
        return True


def test_flash_crash_entry_and_profit_target_exit():
    engine = _engine()
    signals = engine.run(_trade_cycle(T0))

    assert [s.signal for s in signals] == [SIGNAL_NONE] * 7 + [SIGNAL_BUY, SIGNAL_NONE, SIGNAL_SELL]

    buy = signals[7]
    assert buy.active_pattern == "flash_crash"
    assert buy.confidence == pytest.approx(6.0)
    assert buy.stop_price == pytest.approx(97.0 * 0.985)
    assert buy.profit_target_price == pytest.approx(97.0 * 1.02)
    # 5% floor + half of the remaining 5% at confidence 6
    assert buy.size_fraction == pytest.approx(0.08)

    sell = signals[9]
    assert sell.reason == "profit_target"
    assert sell.active_pattern == "flash_crash"

    ctx = engine.ctx
    assert ctx.trade_stats.total == 1 and ctx.trade_stats.wins == 1
    assert ctx.open_positions == 0
    assert ctx.daily.count == 1
    assert not ctx.position.is_entered


def test_regime_filter_blocks_flash_crash_in_calm_market():
    engine = PatternMetaStrategy(EngineSettings())
    signals = engine.run(_trade_cycle(T0))
    assert all(s.signal == SIGNAL_NONE for s in signals)


def test_daily_trade_limit_blocks_until_next_day():
    engine = _engine(max_daily_trades=1)
    first = engine.run(_trade_cycle(T0))
    second = engine.run(_trade_cycle(T0 + 10 * MINUTE))
    third = engine.run(_trade_cycle(T0 + DAY))

    assert SIGNAL_BUY in [s.signal for s in first]
    assert all(s.signal == SIGNAL_NONE for s in second)
    assert second[7].reason == "Daily trade limit (1)"
    assert third[7].signal == SIGNAL_BUY


def test_open_positions_never_exceed_limit():
    engine = _engine()
    records = []
    for i in range(4):
        records += _trade_cycle(T0 + i * 10 * MINUTE)
    for record in records:
        engine.on_bar(record)
        assert 0 <= engine.ctx.open_positions <= engine.settings.limits.max_open_positions


def test_breaker_pauses_pipeline_then_resumes():
    engine = _engine()
    broken = [make_record(100.0, high=99.0, low=101.0, time_ms=T0 + i * 1000) for i in range(11)]
    for record in broken:
        assert engine.on_bar(record).reason == "invalid_data"

    assert engine.report()["paused"]
    paused = engine.run(_trade_cycle(T0 + MINUTE))
    assert all(s.signal == SIGNAL_NONE and s.reason == "paused" for s in paused)

    resumed = engine.run(_trade_cycle(T0 + 20 * MINUTE))
    assert resumed[7].signal == SIGNAL_BUY
    assert engine.report()["error_counts"] == {
        "calculation": 0, "pattern_detection": 0, "risk_management": 0}


def test_invalid_records_are_rejected_without_touching_history():
    engine = _engine()
    engine.on_bar(make_record(100.0, time_ms=T0))

    assert engine.on_bar(None).reason == "invalid_data"
    assert engine.on_bar({"time_ms": T0 + MINUTE, "open": 100.0}).reason == "invalid_data"
    assert engine.on_bar(make_record(200.0, time_ms=T0 + 2 * MINUTE)).reason == "invalid_data"
    assert engine.on_bar(make_record(-1.0, time_ms=T0 + 3 * MINUTE)).reason == "invalid_data"

    assert len(engine.ctx.history) == 1
    assert engine.ctx.errors.stats.calculation == 4
    assert engine.ctx.ticks == 1


def test_missing_indicators_during_warmup_are_tolerated():
    engine = _engine()
    signals = engine.run(flat_records(40))
    assert all(s.signal == SIGNAL_NONE for s in signals)
    assert engine.ctx.errors.stats.total == 0


def test_snapshot_resume_matches_uninterrupted_run():
    records = []
    for i in range(3):
        records += _trade_cycle(T0 + i * 10 * MINUTE)

    full_engine = _engine()
    full = full_engine.run(records)

    first = _engine()
    first.run(records[:18])
    assert first.ctx.position.is_entered
    state = json.loads(json.dumps(first.snapshot()))

    resumed = _engine()
    resumed.restore(state)
    tail = resumed.run(records[18:])

    assert [s.to_dict() for s in tail] == [s.to_dict() for s in full[18:]]
    assert resumed.ctx.trade_stats == full_engine.ctx.trade_stats
    assert resumed.report() == full_engine.report()


def test_restore_rejects_unknown_version():
    engine = _engine()
    state = engine.snapshot()
    state["version"] = 99
    with pytest.raises(ValueError):
        engine.restore(state)


def test_trade_events_go_to_publisher():
    collector = _Collector()
    engine = _engine(publisher=collector)
    engine.run(_trade_cycle(T0))

    kinds = [kind for kind, _ in collector.events]
    assert kinds == ["entry", "exit"]
    entry, exit_ = collector.events[0][1], collector.events[1][1]
    assert entry["signal"]["signal"] == SIGNAL_BUY
    assert entry["report"]["position_state"] == "entered"
    assert exit_["trade"]["reason"] == "profit_target"
    assert exit_["trade"]["is_win"]


def test_trade_statistics_survive_restore():
    engine = _engine()
    engine.run(_trade_cycle(T0))

    resumed = _engine()
    resumed.restore(json.loads(json.dumps(engine.snapshot())))
    assert resumed.get_strategy_stats()["trades"] == engine.get_strategy_stats()["trades"]
    assert resumed.get_strategy_stats()["trades"]["total_trades"] == 1


class _BrokenPublisher:
    def __init__(self):
        self.calls = 0

    def publish(self, kind, payload):
        self.calls += 1
        raise RuntimeError("downstream gone")


def test_publisher_failure_does_not_override_signal():
    publisher = _BrokenPublisher()
    engine = _engine(publisher=publisher)
    signals = engine.run(_trade_cycle(T0))

    assert signals[7].signal == SIGNAL_BUY and signals[7].reason == "entry"
    assert signals[9].signal == SIGNAL_SELL and signals[9].reason == "profit_target"
    assert publisher.calls == 2
    assert engine.ctx.errors.stats.total == 0
    assert engine.ctx.open_positions == 0
    assert engine.ctx.trade_stats.total == 1


def test_publisher_failure_on_entry_keeps_position_and_signal_in_step():
    engine = _engine(publisher=_BrokenPublisher())
    signals = engine.run(_trade_cycle(T0)[:8])

    assert engine.last_signal is signals[-1]
    assert engine.last_signal.signal == SIGNAL_BUY
    assert engine.ctx.position.is_entered
    assert engine.ctx.open_positions == 1


def test_report_shape():
    engine = _engine()
    engine.run(_trade_cycle(T0)[:9])
    report = engine.report()

    assert report["regime"] == {"volatility": "normal", "trend": "neutral", "liquidity": "normal"}
    assert report["position_state"] == "entered"
    assert report["unrealized_profit_pct"] == pytest.approx((97.5 - 97.0) / 97.0 * 100)
    assert report["paused"] is False
    assert engine.last_report == report
    assert engine.get_strategy_stats()["open_positions"] == 1
