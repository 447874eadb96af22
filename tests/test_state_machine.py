import pytest

from app.services.state_machine import (
    InvalidTransitionError,
    SessionState,
    can_transition,
    end,
    start,
    state_of,
    transition,
)


class TestValidTransitions:
    def test_absent_to_active(self):
        assert transition(SessionState.ABSENT, SessionState.ACTIVE) == SessionState.ACTIVE

    def test_active_stays_active(self):
        assert transition(SessionState.ACTIVE, SessionState.ACTIVE) == SessionState.ACTIVE

    def test_active_to_ended(self):
        assert transition(SessionState.ACTIVE, SessionState.ENDED) == SessionState.ENDED


class TestInvalidTransitions:
    def test_absent_to_ended(self):
        with pytest.raises(InvalidTransitionError):
            transition(SessionState.ABSENT, SessionState.ENDED)

    def test_ended_is_final(self):
        with pytest.raises(InvalidTransitionError):
            transition(SessionState.ENDED, SessionState.ACTIVE)

    def test_error_names_both_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(SessionState.ENDED, SessionState.ACTIVE)
        assert "ended -> active" in str(exc_info.value)


class TestHelperFunctions:
    def test_start(self):
        assert start(SessionState.ABSENT) == SessionState.ACTIVE

    def test_end(self):
        assert end(SessionState.ACTIVE) == SessionState.ENDED

    def test_end_absent_fails(self):
        with pytest.raises(InvalidTransitionError):
            end(SessionState.ABSENT)

    def test_state_of_missing_value(self):
        assert state_of(None) == SessionState.ABSENT
        assert state_of("") == SessionState.ABSENT

    def test_state_of_stored_value(self):
        assert state_of("active") == SessionState.ACTIVE


class TestCanTransition:
    def test_valid_returns_true(self):
        assert can_transition(SessionState.ABSENT, SessionState.ACTIVE) is True

    def test_invalid_returns_false(self):
        assert can_transition(SessionState.ENDED, SessionState.ACTIVE) is False
