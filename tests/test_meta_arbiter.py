from meta_arbiter import MODE_REGIME_BASED, compatible_patterns, decide, rank_candidates
from patterns import PatternResult
from regime_engine import MarketRegime, Trend, Volatility
from settings import MetaSettings


def _results(**confidences):
    return {name: PatternResult(name=name, detected=True, confidence=conf)
            for name, conf in confidences.items()}


NO_FILTER = MetaSettings(enable_regime_filter=False)


def test_ambiguous_signal_is_suppressed():
    patterns = _results(flash_crash=8.0, unsteady_decline=7.0)
    assert decide(patterns, MarketRegime(), NO_FILTER) is None


def test_clear_winner_selected():
    patterns = _results(flash_crash=6.0, unsteady_decline=9.0)
    chosen = decide(patterns, MarketRegime(), NO_FILTER)
    assert chosen.name == "unsteady_decline"
    assert chosen.confidence == 9.0


def test_decide_is_pure():
    patterns = _results(flash_crash=9.0, post_stagnation=6.5)
    regime = MarketRegime(volatility=Volatility.HIGH, trend=Trend.BEARISH)
    settings = MetaSettings()
    first = decide(patterns, regime, settings)
    for _ in range(5):
        assert decide(patterns, regime, settings) is first
    assert regime.version == 0


def test_below_threshold_and_undetected_are_ignored():
    patterns = _results(flash_crash=5.9)
    patterns["unsteady_decline"] = PatternResult("unsteady_decline", detected=False, confidence=9.0)
    assert rank_candidates(patterns, MarketRegime(), NO_FILTER) == []
    assert decide(patterns, MarketRegime(), NO_FILTER) is None


def test_single_candidate_needs_no_gap():
    patterns = _results(flash_crash=6.0)
    assert decide(patterns, MarketRegime(), NO_FILTER).name == "flash_crash"


def test_regime_filter_blocks_counter_trend_entries():
    patterns = _results(flash_crash=9.0)
    regime = MarketRegime(volatility=Volatility.HIGH, trend=Trend.BULLISH)
    assert compatible_patterns(regime) == ()
    assert decide(patterns, regime, MetaSettings()) is None


def test_regime_filter_removes_runner_up_before_gap_check():
    patterns = _results(flash_crash=8.0, post_stagnation=7.5)
    regime = MarketRegime(volatility=Volatility.HIGH, trend=Trend.BEARISH)
    assert decide(patterns, regime, MetaSettings()).name == "flash_crash"


def test_unknown_regime_key_allows_everything():
    patterns = _results(post_stagnation=8.0)
    matrix = {"high-bearish": ("flash_crash",)}
    chosen = decide(patterns, MarketRegime(), MetaSettings(), matrix)
    assert chosen.name == "post_stagnation"


def test_regime_based_mode_takes_top_candidate():
    settings = MetaSettings(decision_mode=MODE_REGIME_BASED, enable_regime_filter=False)
    patterns = _results(flash_crash=8.0, unsteady_decline=7.5)
    assert decide(patterns, MarketRegime(), settings).name == "flash_crash"


def test_ties_keep_detector_order():
    settings = MetaSettings(decision_mode=MODE_REGIME_BASED, enable_regime_filter=False)
    patterns = _results(flash_crash=7.0, post_stagnation=7.0)
    ranked = rank_candidates(patterns, MarketRegime(), settings)
    assert [p.name for p in ranked] == ["flash_crash", "post_stagnation"]
