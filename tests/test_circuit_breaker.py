import pytest

from circuit_breaker import (
    CircuitState, DataValidationError, ErrorCategory, ErrorStats, ErrorTracker,
    PatternDetectionError, RiskManagementError,
)

T0 = 1_700_000_000_000
MINUTE = 60_000


def test_pauses_after_eleven_errors_and_resets_after_cooldown():
    tracker = ErrorTracker(pause_threshold=10, pause_minutes=15)
    categories = list(ErrorCategory)

    for i in range(10):
        tracker.record(categories[i % 3], f"fault {i}", T0)
    assert not tracker.is_paused(T0)

    tracker.record(ErrorCategory.CALCULATION, "fault 10", T0)
    assert tracker.stats.total == 11
    assert tracker.is_paused(T0)
    assert tracker.state is CircuitState.OPEN
    assert tracker.is_paused(T0 + 15 * MINUTE - 1)

    assert not tracker.is_paused(T0 + 15 * MINUTE)
    assert tracker.stats.total == 0
    assert tracker.stats.as_counts() == {
        "calculation": 0, "pattern_detection": 0, "risk_management": 0}
    assert tracker.state is CircuitState.CLOSED


def test_last_error_message_is_retained():
    tracker = ErrorTracker()
    tracker.record(ErrorCategory.RISK_MANAGEMENT, "bad size", T0 + 5)
    assert tracker.stats.last_error_message == "bad size"
    assert tracker.stats.last_error_time == T0 + 5


def test_record_fault_uses_exception_category():
    tracker = ErrorTracker()
    tracker.record_fault(DataValidationError("nan close"), T0)
    tracker.record_fault(PatternDetectionError("bad window"), T0)
    tracker.record_fault(RiskManagementError("bad stop"), T0)
    tracker.record_fault(ValueError("unknown"), T0, prefix="misc: ")

    assert tracker.stats.calculation == 2
    assert tracker.stats.pattern_detection == 1
    assert tracker.stats.risk_management == 1
    assert tracker.stats.last_error_message == "misc: unknown"


def test_auto_pause_disabled_only_counts():
    tracker = ErrorTracker(pause_threshold=1, auto_pause=False)
    for _ in range(5):
        tracker.record(ErrorCategory.CALCULATION, "x", T0)
    assert tracker.stats.total == 5
    assert not tracker.is_paused(T0)


def test_errors_during_pause_do_not_extend_cooldown():
    tracker = ErrorTracker(pause_threshold=0, pause_minutes=1)
    tracker.record(ErrorCategory.CALCULATION, "first", T0)
    paused_until = tracker.stats.paused_until
    tracker.record(ErrorCategory.CALCULATION, "second", T0 + 30_000)
    assert tracker.stats.paused_until == paused_until


def test_stats_round_trip():
    tracker = ErrorTracker(pause_threshold=1)
    tracker.record(ErrorCategory.CALCULATION, "a", T0)
    tracker.record(ErrorCategory.PATTERN_DETECTION, "b", T0 + 1)

    restored = ErrorTracker(pause_threshold=1, stats=ErrorStats.from_dict(tracker.stats.to_dict()))
    assert restored.stats == tracker.stats
    assert restored.is_paused(T0 + 2)


def test_force_reset():
    tracker = ErrorTracker(pause_threshold=0)
    tracker.record(ErrorCategory.CALCULATION, "x", T0)
    assert tracker.is_paused(T0)
    tracker.force_reset()
    assert not tracker.is_paused(T0)
    assert tracker.get_stats()["total"] == 0


def test_unknown_category_string_rejected():
    tracker = ErrorTracker()
    with pytest.raises(ValueError):
        tracker.record("network", "x", T0)
