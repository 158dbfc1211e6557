"""
Meta-Decision Arbiter
=====================
Selects at most one pattern per tick from the detector outputs:

1. keep detected patterns with confidence >= min_confidence_threshold
2. optionally keep only patterns the regime compatibility matrix allows
3. rank by confidence (stable: ties keep detector order)
4. regime_based    → take the top candidate
   best_confidence → take the top candidate only if it leads the runner-up
                     by at least min_confidence_difference

``decide`` is a pure function of (patterns, regime, settings).
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import config
from patterns import PatternResult
from regime_engine import MarketRegime
from settings import MetaSettings

logger = logging.getLogger(__name__)

MODE_BEST_CONFIDENCE = "best_confidence"
MODE_REGIME_BASED    = "regime_based"


def compatible_patterns(regime: MarketRegime,
                        matrix: Mapping[str, Sequence[str]] = config.REGIME_PATTERN_COMPATIBILITY
                        ) -> Optional[Sequence[str]]:
    """Allowed pattern names for the regime; None means every pattern is allowed."""
    return matrix.get(regime.compat_key)


def rank_candidates(patterns: Mapping[str, PatternResult], regime: MarketRegime,
                    settings: MetaSettings,
                    matrix: Mapping[str, Sequence[str]] = config.REGIME_PATTERN_COMPATIBILITY
                    ) -> List[PatternResult]:
    candidates = [p for p in patterns.values()
                  if p.detected and p.confidence >= settings.min_confidence_threshold]

    if settings.enable_regime_filter:
        allowed = compatible_patterns(regime, matrix)
        if allowed is not None:
            candidates = [p for p in candidates if p.name in allowed]

    return sorted(candidates, key=lambda p: p.confidence, reverse=True)


def decide(patterns: Mapping[str, PatternResult], regime: MarketRegime,
           settings: MetaSettings,
           matrix: Mapping[str, Sequence[str]] = config.REGIME_PATTERN_COMPATIBILITY
           ) -> Optional[PatternResult]:
    candidates = rank_candidates(patterns, regime, settings, matrix)
    if not candidates:
        return None

    best = candidates[0]
    if settings.decision_mode == MODE_REGIME_BASED:
        return best

    if len(candidates) > 1:
        runner_up = candidates[1]
        if best.confidence - runner_up.confidence < settings.min_confidence_difference:
            logger.debug(
                f"Ambiguous signal: {best.name}={best.confidence:.1f} vs "
                f"{runner_up.name}={runner_up.confidence:.1f}")
            return None
    return best


def summarize(patterns: Dict[str, PatternResult]) -> str:
    """One-line detector summary for debug logs."""
    parts = [f"{name}={'Y' if p.detected else '-'}{p.confidence:.1f}"
             for name, p in patterns.items()]
    return " ".join(parts)
