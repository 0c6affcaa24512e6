"""Unit tests for the scan state machine."""

import pytest

from scanstore.errors import InvalidStateTransition, ValidationError
from scanstore.storage.lifecycle import (
    INITIAL_STATE,
    ScanState,
    can_transition,
    check_transition,
    coerce_state,
    is_terminal,
    terminal_state_for,
    validate_forced_state,
)


class TestCoerceState:
    def test_accepts_enum_and_names(self):
        assert coerce_state(ScanState.RUNNING) is ScanState.RUNNING
        assert coerce_state("FINISHED") is ScanState.FINISHED
        assert coerce_state("aborted") is ScanState.ABORTED

    def test_unknown_state_raises(self):
        with pytest.raises(ValidationError, match="Unknown scan state"):
            coerce_state("DONE")


class TestTransitions:
    def test_initial_state_is_running(self):
        assert INITIAL_STATE is ScanState.RUNNING
        assert not is_terminal(INITIAL_STATE)

    @pytest.mark.parametrize(
        "target", [ScanState.FINISHED, ScanState.FAILED, ScanState.ABORTED]
    )
    def test_running_moves_to_any_terminal_state(self, target):
        assert can_transition(ScanState.RUNNING, target)
        assert is_terminal(target)

    @pytest.mark.parametrize(
        "current", [ScanState.FINISHED, ScanState.FAILED, ScanState.ABORTED]
    )
    def test_terminal_states_never_move(self, current):
        for target in ScanState:
            assert not can_transition(current, target)

    def test_orchestrator_states_are_not_written(self):
        assert not can_transition(ScanState.PENDING, ScanState.RUNNING)
        assert not can_transition(ScanState.STARTING, ScanState.FINISHED)

    def test_check_transition_reports_both_states(self):
        with pytest.raises(InvalidStateTransition) as excinfo:
            check_transition(7, "FINISHED", ScanState.ABORTED)

        error = excinfo.value
        assert error.scan_id == 7
        assert error.current == "FINISHED"
        assert error.target == "ABORTED"
        assert isinstance(error, ValidationError)


class TestTerminalState:
    def test_score_present_finishes(self):
        assert terminal_state_for(0) is ScanState.FINISHED
        assert terminal_state_for(95) is ScanState.FINISHED

    def test_missing_score_fails(self):
        assert terminal_state_for(None) is ScanState.FAILED


class TestForcedState:
    def test_aborted_needs_no_error(self):
        assert validate_forced_state("ABORTED", None) is ScanState.ABORTED

    def test_failed_requires_error(self):
        with pytest.raises(ValidationError, match="requires an error"):
            validate_forced_state(ScanState.FAILED, None)
        assert validate_forced_state(ScanState.FAILED, "timeout") is ScanState.FAILED

    @pytest.mark.parametrize("state", ["FINISHED", "RUNNING", "PENDING"])
    def test_other_states_rejected(self, state):
        with pytest.raises(ValidationError, match="only accepts FAILED or ABORTED"):
            validate_forced_state(state, "error")
