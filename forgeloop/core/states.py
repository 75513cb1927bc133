"""Correction loop state machine.

Defines the loop states and the allowed transitions between them.

States:
- EXECUTING: Applying the current edit set
- VALIDATING: Running validation on the applied edits
- CORRECTING: Asking the provider for a corrected edit set
- REVIEW: Reviewing validated changes
- REVIEW_CORRECTING: Asking for a fix of CRITICAL review findings
- SUCCESS, PARTIAL_SUCCESS, ROUNDS_EXHAUSTED, FATAL, CANCELLED: terminal

This module is headless - no FastAPI or HTTP dependencies.
"""

from enum import Enum
from typing import Set

from forgeloop.core.exceptions import ForgeLoopError
from forgeloop.core.models import ExecutionStatus


class LoopState(str, Enum):
    """Correction loop state.

    Uses str mixin for easy JSON serialization.
    """

    EXECUTING = "EXECUTING"
    VALIDATING = "VALIDATING"
    CORRECTING = "CORRECTING"
    REVIEW = "REVIEW"
    REVIEW_CORRECTING = "REVIEW_CORRECTING"
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    ROUNDS_EXHAUSTED = "ROUNDS_EXHAUSTED"
    FATAL = "FATAL"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def to_status(self) -> ExecutionStatus:
        """ExecutionStatus for a terminal state.

        Raises:
            ValueError: If the state is not terminal
        """
        return ExecutionStatus(self.value)


TERMINAL_STATES: frozenset[LoopState] = frozenset({
    LoopState.SUCCESS,
    LoopState.PARTIAL_SUCCESS,
    LoopState.ROUNDS_EXHAUSTED,
    LoopState.FATAL,
    LoopState.CANCELLED,
})

_ABORT = {LoopState.FATAL, LoopState.CANCELLED}

# Allowed state transitions (from -> set of allowed targets)
ALLOWED_TRANSITIONS: dict[LoopState, Set[LoopState]] = {
    LoopState.EXECUTING: {
        LoopState.VALIDATING, LoopState.CORRECTING, LoopState.ROUNDS_EXHAUSTED,
        LoopState.REVIEW_CORRECTING, LoopState.PARTIAL_SUCCESS,
    } | _ABORT,
    LoopState.VALIDATING: {
        LoopState.SUCCESS, LoopState.REVIEW, LoopState.CORRECTING,
        LoopState.REVIEW_CORRECTING, LoopState.PARTIAL_SUCCESS, LoopState.ROUNDS_EXHAUSTED,
    } | _ABORT,
    # CORRECTING -> CORRECTING: the provider produced nothing usable, ask again
    LoopState.CORRECTING: {LoopState.EXECUTING, LoopState.CORRECTING, LoopState.ROUNDS_EXHAUSTED} | _ABORT,
    LoopState.REVIEW: {LoopState.SUCCESS, LoopState.REVIEW_CORRECTING, LoopState.PARTIAL_SUCCESS} | _ABORT,
    LoopState.REVIEW_CORRECTING: {LoopState.EXECUTING, LoopState.PARTIAL_SUCCESS} | _ABORT,
    LoopState.SUCCESS: set(),  # Terminal states
    LoopState.PARTIAL_SUCCESS: set(),
    LoopState.ROUNDS_EXHAUSTED: set(),
    LoopState.FATAL: set(),
    LoopState.CANCELLED: set(),
}


class InvalidTransitionError(ForgeLoopError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, current: LoopState, target: LoopState):
        self.current = current
        self.target = target
        allowed = ALLOWED_TRANSITIONS.get(current, set())
        allowed_str = ", ".join(sorted(s.value for s in allowed)) if allowed else "none"
        super().__init__(
            f"Invalid transition: {current.value} -> {target.value}. "
            f"Allowed transitions from {current.value}: {allowed_str}"
        )


def can_transition(current: LoopState, target: LoopState) -> bool:
    """Check if a state transition is allowed."""
    return target in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: LoopState, target: LoopState) -> None:
    """Validate a state transition, raising if invalid.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
