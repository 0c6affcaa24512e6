"""Scan lifecycle state machine.

A scan is created RUNNING and moves exactly once more, into FINISHED, FAILED
or ABORTED. PENDING and STARTING belong to the external orchestrator's
vocabulary and are never written by the store.
"""

from enum import Enum
from typing import Optional

from scanstore.errors import InvalidStateTransition, ValidationError

# Bumped whenever the external scoring rules change.
ALGORITHM_VERSION = 4

FAILED_WITHOUT_SCORE = "scan finished without a score"


class ScanState(str, Enum):
    """Allowed values for Scan.state."""

    PENDING = "PENDING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


INITIAL_STATE = ScanState.RUNNING

TERMINAL_STATES = frozenset(
    {ScanState.FINISHED, ScanState.FAILED, ScanState.ABORTED}
)

LEGAL_TRANSITIONS: dict[ScanState, frozenset[ScanState]] = {
    ScanState.RUNNING: frozenset(
        {ScanState.FINISHED, ScanState.FAILED, ScanState.ABORTED}
    ),
}

# States update_scan_state may force outside the insert_test_results path
FORCEABLE_STATES = frozenset({ScanState.FAILED, ScanState.ABORTED})


def coerce_state(value) -> ScanState:
    """Return value as a ScanState, raising ValidationError for unknown names."""
    if isinstance(value, ScanState):
        return value
    try:
        return ScanState(str(value).upper())
    except ValueError:
        raise ValidationError(f"Unknown scan state: {value!r}") from None


def is_terminal(state) -> bool:
    return coerce_state(state) in TERMINAL_STATES


def can_transition(current, target) -> bool:
    if is_terminal(current):
        return False
    return coerce_state(target) in LEGAL_TRANSITIONS.get(
        coerce_state(current), frozenset()
    )


def check_transition(scan_id, current, target) -> None:
    """Raise InvalidStateTransition unless current -> target is legal."""
    if not can_transition(current, target):
        raise InvalidStateTransition(scan_id, current, target)


def terminal_state_for(score) -> ScanState:
    """Terminal state reached by insert_test_results for a final score."""
    return ScanState.FINISHED if score is not None else ScanState.FAILED


def validate_forced_state(state, error: Optional[str]) -> ScanState:
    """Validate the arguments of update_scan_state.

    Only FAILED and ABORTED may be forced, and a FAILED scan always carries
    an error message.
    """
    target = coerce_state(state)
    if target not in FORCEABLE_STATES:
        raise ValidationError(
            f"update_scan_state only accepts FAILED or ABORTED, got {target.value}"
        )
    if target is ScanState.FAILED and not error:
        raise ValidationError("A FAILED scan requires an error message")
    return target
