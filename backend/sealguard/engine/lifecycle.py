"""
lifecycle.py - Session Lifecycle Manager.

PENDING -> IN_PROGRESS -> COMPLETED

INVARIANTS:
1. State is monotonic (no backward transitions)
2. Each transition is single-use
3. Only IN_PROGRESS sessions accept scans, status changes and field edits
"""

from .errors import (
    VerificationException,
    illegal_transition,
    invalid_session_state,
    session_already_finalized,
)
from .states import SessionState

_TRANSITIONS = {
    SessionState.PENDING: SessionState.IN_PROGRESS,
    SessionState.IN_PROGRESS: SessionState.COMPLETED,
}


def can_accept_scans(state: SessionState) -> bool:
    return state == SessionState.IN_PROGRESS


def can_accept_field_edits(state: SessionState) -> bool:
    return state == SessionState.IN_PROGRESS


class SessionLifecycle:
    """State holder for one session's outer state machine."""

    def __init__(self, session_id: str, state: SessionState = SessionState.PENDING):
        self.session_id = session_id
        self.state = SessionState(state)

    def can_accept_scans(self) -> bool:
        return can_accept_scans(self.state)

    def can_accept_field_edits(self) -> bool:
        return can_accept_field_edits(self.state)

    def check_transition(self, target: SessionState) -> None:
        """Raise ILLEGAL_TRANSITION unless `target` is the single next state."""
        if _TRANSITIONS.get(self.state) != target:
            raise VerificationException(
                illegal_transition(self.state.value, SessionState(target).value)
            )

    def transition(self, target: SessionState) -> SessionState:
        """Apply the transition to `target`; returns the previous state."""
        self.check_transition(target)
        previous = self.state
        self.state = target
        return previous

    def require_active(self) -> None:
        """
        Guard clause for every mutating verification command.

        Raises:
            VerificationException: SESSION_ALREADY_FINALIZED once COMPLETED,
                INVALID_SESSION_STATE while still PENDING.
        """
        if self.state == SessionState.COMPLETED:
            raise VerificationException(session_already_finalized(self.session_id))
        if self.state != SessionState.IN_PROGRESS:
            raise VerificationException(
                invalid_session_state(
                    self.session_id, self.state.value, SessionState.IN_PROGRESS.value
                )
            )

    def require_pending(self) -> None:
        """Registration edits are only legal before verification starts."""
        if self.state != SessionState.PENDING:
            raise VerificationException(
                invalid_session_state(
                    self.session_id, self.state.value, SessionState.PENDING.value
                )
            )
