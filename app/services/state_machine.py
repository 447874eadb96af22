from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    ENDED = "ended"


VALID_TRANSITIONS = {
    SessionState.ABSENT: [SessionState.ACTIVE],
    SessionState.ACTIVE: [SessionState.ACTIVE, SessionState.ENDED],
    SessionState.ENDED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SessionState, to_state: SessionState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: SessionState, to_state: SessionState) -> bool:
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SessionState, to_state: SessionState) -> SessionState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def state_of(value: Optional[str]) -> SessionState:
    """Map a stored state string to a SessionState; missing sessions are absent."""
    if not value:
        return SessionState.ABSENT
    return SessionState(value)


def start(current_state: SessionState) -> SessionState:
    """Open a session, or keep an already active one active."""
    return transition(current_state, SessionState.ACTIVE)


def end(current_state: SessionState) -> SessionState:
    return transition(current_state, SessionState.ENDED)
