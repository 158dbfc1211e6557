"""
STATE MACHINE
=============
State management with:
- Validated transitions
- Bounded transition history stamped with candle time
- Forced restore for resuming from a snapshot

Single-threaded by contract: the engine owning it is the only writer.

Version: 3.0.0
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List, Optional, Set

import config

logger = logging.getLogger(__name__)


@dataclass
class StateTransition:
    """Record of a state transition"""
    from_state: str
    to_state: str
    time_ms: Optional[int]
    reason: Optional[str] = None


class StateMachine:
    """
    State machine with validation
    """

    def __init__(
        self,
        name: str,
        initial_state: str,
        valid_transitions: Dict[str, Set[str]],
        history_size: int = config.STATE_HISTORY_MAXLEN,
    ):
        """
        Initialize state machine

        Args:
            name: State machine name
            initial_state: Initial state
            valid_transitions: Dict of state -> set of valid next states
            history_size: Number of transitions kept
        """
        self.name = name
        self._current_state = initial_state
        self._valid_transitions = valid_transitions
        self._history: Deque[StateTransition] = deque(maxlen=history_size)

        logger.debug(f"StateMachine '{name}' initialized in state: {initial_state}")

    @property
    def current_state(self) -> str:
        return self._current_state

    def can_transition_to(self, new_state: str) -> bool:
        """Check if transition is valid"""
        return new_state in self._valid_transitions.get(self._current_state, set())

    def transition(self, new_state: str, time_ms: Optional[int] = None,
                   reason: Optional[str] = None) -> bool:
        """
        Transition to new state

        Raises:
            ValueError: If transition is invalid
        """
        if not self.can_transition_to(new_state):
            raise ValueError(
                f"Invalid transition in '{self.name}': "
                f"{self._current_state} -> {new_state}"
            )

        old_state = self._current_state
        self._current_state = new_state
        self._history.append(StateTransition(old_state, new_state, time_ms, reason))

        logger.debug(
            f"[{self.name}] State transition: {old_state} -> {new_state}"
            + (f" ({reason})" if reason else "")
        )
        return True

    def force_state(self, new_state: str, reason: str = "forced") -> None:
        """Force state without validation (snapshot restore)"""
        old_state = self._current_state
        self._current_state = new_state
        self._history.append(StateTransition(old_state, new_state, None, f"FORCED: {reason}"))
        logger.debug(f"[{self.name}] FORCED state: {old_state} -> {new_state} ({reason})")

    def get_history(self, limit: Optional[int] = None) -> List[StateTransition]:
        """Get state transition history"""
        history = list(self._history)
        return history[-limit:] if limit else history


class PositionState(str, Enum):
    FLAT    = "flat"
    ENTERED = "entered"


class PositionStateMachine(StateMachine):
    """Two-state position lifecycle: every exit returns to FLAT"""

    def __init__(self):
        super().__init__(
            name="POSITION",
            initial_state=PositionState.FLAT.value,
            valid_transitions={
                PositionState.FLAT.value: {PositionState.ENTERED.value},
                PositionState.ENTERED.value: {PositionState.FLAT.value},
            },
        )

    @property
    def state(self) -> PositionState:
        return PositionState(self.current_state)
