"""
CIRCUIT BREAKER / ERROR TRACKER
================================
Protects the decision pipeline from cascading faults by:
- Counting categorized faults reported by every component
- Opening (pausing signal emission) once the total exceeds a threshold
- Closing automatically after a fixed cooldown, with counters reset

The clock is whatever the caller passes in (candle time in ms), so a
backtest replay pauses and resumes exactly like a live run.

Version: 3.0.0
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Optional

import config

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Fault buckets tracked by the breaker"""
    CALCULATION = "calculation"
    PATTERN_DETECTION = "pattern_detection"
    RISK_MANAGEMENT = "risk_management"


class CircuitState(Enum):
    """Breaker states"""
    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Paused, every tick resolves to "none"


# ============================================================================
# FAULT TAXONOMY
# ============================================================================

class EngineFault(Exception):
    """Base for faults raised inside the pipeline and recorded by the breaker"""
    category = ErrorCategory.CALCULATION


class DataValidationError(EngineFault):
    """Bad input record: NaN/non-positive price, high < low, price jump"""
    category = ErrorCategory.CALCULATION


class PatternDetectionError(EngineFault):
    """Detector-internal fault (invalid input for a detector)"""
    category = ErrorCategory.PATTERN_DETECTION


class RiskManagementError(EngineFault):
    """Position / risk computation fault"""
    category = ErrorCategory.RISK_MANAGEMENT


# ============================================================================
# ERROR STATS
# ============================================================================

@dataclass
class ErrorStats:
    calculation:        int = 0
    pattern_detection:  int = 0
    risk_management:    int = 0
    last_error_time:    Optional[int] = None
    last_error_message: Optional[str] = None
    paused_until:       Optional[int] = None

    @property
    def total(self) -> int:
        return self.calculation + self.pattern_detection + self.risk_management

    def as_counts(self) -> Dict[str, int]:
        return {
            ErrorCategory.CALCULATION.value: self.calculation,
            ErrorCategory.PATTERN_DETECTION.value: self.pattern_detection,
            ErrorCategory.RISK_MANAGEMENT.value: self.risk_management,
        }

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "ErrorStats":
        return cls(
            calculation=int(data.get("calculation", 0)),
            pattern_detection=int(data.get("pattern_detection", 0)),
            risk_management=int(data.get("risk_management", 0)),
            last_error_time=data.get("last_error_time"),
            last_error_message=data.get("last_error_message"),
            paused_until=data.get("paused_until"),
        )


# ============================================================================
# TRACKER
# ============================================================================

class ErrorTracker:
    """
    Circuit breaker over categorized error counts.

    Components call ``record`` instead of propagating; the engine asks
    ``is_paused`` once per tick before running any stage.
    """

    def __init__(
        self,
        pause_threshold: int = config.PAUSE_ERROR_THRESHOLD,
        pause_minutes: float = config.PAUSE_MINUTES,
        auto_pause: bool = config.AUTO_PAUSE_ON_ERRORS,
        stats: Optional[ErrorStats] = None,
    ):
        """
        Args:
            pause_threshold: Pause once the total error count exceeds this
            pause_minutes: Cooldown length in (simulated) minutes
            auto_pause: Disable to count without ever pausing
            stats: Existing stats to resume from
        """
        self.pause_threshold = pause_threshold
        self.cooldown_ms = int(pause_minutes * 60 * 1000)
        self.auto_pause = auto_pause
        self.stats = stats if stats is not None else ErrorStats()

        logger.debug(
            f"ErrorTracker initialized: threshold={pause_threshold}, "
            f"cooldown={pause_minutes}min"
        )

    @property
    def state(self) -> CircuitState:
        return CircuitState.OPEN if self.stats.paused_until is not None else CircuitState.CLOSED

    def record(self, category: ErrorCategory, message: str, now_ms: int) -> None:
        """Count a fault and open the breaker when the threshold is exceeded"""
        category = ErrorCategory(category)
        stats = self.stats
        setattr(stats, category.value, getattr(stats, category.value) + 1)
        stats.last_error_time = now_ms
        stats.last_error_message = message

        logger.debug(f"Engine {category.value} error: {message}")

        if (self.auto_pause
                and stats.paused_until is None
                and stats.total > self.pause_threshold):
            stats.paused_until = now_ms + self.cooldown_ms
            logger.error(
                f"❌ Circuit OPENED: {stats.total} errors > {self.pause_threshold} "
                f"; trading paused for {self.cooldown_ms // 60000} min "
                f"(last: {message})"
            )

    def record_fault(self, fault: Exception, now_ms: int, prefix: str = "") -> None:
        """Record an exception under its own category (calculation if unknown)"""
        category = getattr(fault, "category", ErrorCategory.CALCULATION)
        text = f"{prefix}{fault}" if prefix else str(fault)
        self.record(category, text, now_ms)

    def is_paused(self, now_ms: int) -> bool:
        """True during the cooldown; the first call after expiry resets all counters"""
        paused_until = self.stats.paused_until
        if paused_until is None:
            return False
        if now_ms < paused_until:
            return True

        logger.info("🔄 Circuit CLOSED: cooldown expired, error counters reset")
        self.stats = ErrorStats()
        return False

    def force_reset(self) -> None:
        """Manually clear every counter and close the breaker"""
        logger.info("Circuit manually reset")
        self.stats = ErrorStats()

    def get_stats(self) -> dict:
        """Breaker statistics for reporting"""
        stats = self.stats
        return {
            "state": self.state.value,
            "counts": stats.as_counts(),
            "total": stats.total,
            "last_error_time": stats.last_error_time,
            "last_error_message": stats.last_error_message,
            "paused_until": stats.paused_until,
        }
