"""Response case state machine.

    CREATED -> EXECUTING -> AWAITING_APPROVAL -> APPROVED -> EXECUTING -> CLOSED
                                              -> DENIED -> CLOSED
               EXECUTING -> FAILED
    CLOSED | FAILED -> ROLLED_BACK                  (false positive)
    any state before CLOSED -> CANCELLED            (operator cancel)

Only the orchestrator moves a case, and only through ``check_transition``.
"""

from uuid import UUID

from warden.core.exceptions import InvalidTransitionError
from warden.response.types import CaseState

ALLOWED_TRANSITIONS: dict[CaseState, frozenset[CaseState]] = {
    CaseState.CREATED: frozenset({CaseState.EXECUTING, CaseState.CANCELLED}),
    CaseState.EXECUTING: frozenset(
        {
            CaseState.AWAITING_APPROVAL,
            CaseState.CLOSED,
            CaseState.FAILED,
            CaseState.CANCELLED,
        }
    ),
    CaseState.AWAITING_APPROVAL: frozenset(
        {CaseState.APPROVED, CaseState.DENIED, CaseState.CANCELLED}
    ),
    CaseState.APPROVED: frozenset({CaseState.EXECUTING, CaseState.CANCELLED}),
    CaseState.DENIED: frozenset({CaseState.CLOSED}),
    CaseState.CLOSED: frozenset({CaseState.ROLLED_BACK}),
    CaseState.FAILED: frozenset({CaseState.ROLLED_BACK}),
    CaseState.ROLLED_BACK: frozenset(),
    CaseState.CANCELLED: frozenset(),
}

CANCELLABLE_STATES = frozenset(
    state for state, targets in ALLOWED_TRANSITIONS.items() if CaseState.CANCELLED in targets
)

ROLLBACK_STATES = frozenset({CaseState.CLOSED, CaseState.FAILED})


def can_transition(from_state: CaseState, to_state: CaseState) -> bool:
    """Check whether a transition is allowed."""
    return to_state in ALLOWED_TRANSITIONS[from_state]


def check_transition(case_id: UUID, from_state: CaseState, to_state: CaseState) -> None:
    """Validate a transition.

    Raises:
        InvalidTransitionError: If the transition is not in the table.
    """
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(case_id, from_state.value, to_state.value)
