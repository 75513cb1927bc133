"""Unit tests for forgeloop/core/states.py."""

import pytest

from forgeloop.core.models import ExecutionStatus
from forgeloop.core.states import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    InvalidTransitionError,
    LoopState,
    can_transition,
    validate_transition,
)


class TestLoopState:
    """Tests for LoopState enum."""

    def test_state_is_string(self):
        assert LoopState.EXECUTING == "EXECUTING"

    def test_terminal_states(self):
        assert {s.value for s in TERMINAL_STATES} == {s.value for s in ExecutionStatus}
        assert LoopState.SUCCESS.is_terminal
        assert not LoopState.CORRECTING.is_terminal

    def test_to_status(self):
        assert LoopState.ROUNDS_EXHAUSTED.to_status() == ExecutionStatus.ROUNDS_EXHAUSTED

    def test_non_terminal_has_no_status(self):
        with pytest.raises(ValueError):
            LoopState.VALIDATING.to_status()

    def test_every_state_has_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(LoopState)


class TestCanTransition:
    """Tests for can_transition function."""

    def test_main_cycle(self):
        assert can_transition(LoopState.EXECUTING, LoopState.VALIDATING) is True
        assert can_transition(LoopState.VALIDATING, LoopState.CORRECTING) is True
        assert can_transition(LoopState.CORRECTING, LoopState.EXECUTING) is True

    def test_apply_failure_goes_straight_to_correcting(self):
        assert can_transition(LoopState.EXECUTING, LoopState.CORRECTING) is True

    def test_review_cycle(self):
        assert can_transition(LoopState.VALIDATING, LoopState.REVIEW) is True
        assert can_transition(LoopState.REVIEW, LoopState.REVIEW_CORRECTING) is True
        assert can_transition(LoopState.REVIEW_CORRECTING, LoopState.EXECUTING) is True
        assert can_transition(LoopState.REVIEW, LoopState.PARTIAL_SUCCESS) is True

    def test_cannot_skip_validation(self):
        assert can_transition(LoopState.EXECUTING, LoopState.SUCCESS) is False
        assert can_transition(LoopState.CORRECTING, LoopState.VALIDATING) is False

    @pytest.mark.parametrize("state", [s for s in LoopState if not s.is_terminal])
    def test_abort_reachable_from_every_active_state(self, state):
        assert can_transition(state, LoopState.FATAL) is True
        assert can_transition(state, LoopState.CANCELLED) is True

    @pytest.mark.parametrize("state", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, state):
        assert not any(can_transition(state, target) for target in LoopState)


class TestValidateTransition:
    def test_valid_transition_passes(self):
        validate_transition(LoopState.REVIEW, LoopState.SUCCESS)

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(LoopState.SUCCESS, LoopState.EXECUTING)

        assert exc_info.value.current == LoopState.SUCCESS
        assert exc_info.value.target == LoopState.EXECUTING
        assert "Allowed transitions from SUCCESS: none" in str(exc_info.value)
