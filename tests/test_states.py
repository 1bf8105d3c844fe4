"""
Tests for session state derivation.
"""

import pytest
from reliable.states import SessionState, derive_state


class TestSessionState:
    """Test state enum helpers."""

    def test_state_properties(self):
        assert SessionState.OPEN.can_send_data()
        assert SessionState.PEER_DONE.can_send_data()
        assert not SessionState.LOCAL_EOF_SENT.can_send_data()

        assert SessionState.OPEN.can_receive_data()
        assert SessionState.LOCAL_DONE.can_receive_data()
        assert not SessionState.PEER_DONE.can_receive_data()
        assert not SessionState.CLOSED.can_receive_data()

    def test_closing_states(self):
        closing_states = [
            SessionState.LOCAL_EOF_SENT,
            SessionState.LOCAL_DONE,
            SessionState.PEER_DONE,
            SessionState.LINGERING
        ]

        for state in closing_states:
            assert state.is_closing(), f"{state} should be closing"

        for state in (SessionState.OPEN, SessionState.CLOSED):
            assert not state.is_closing(), f"{state} should not be closing"


class TestDeriveState:
    """Test mapping session flags to states."""

    @pytest.mark.parametrize("local_eof,window_empty,peer_eof,expected", [
        (False, True, False, SessionState.OPEN),
        (False, False, False, SessionState.OPEN),
        (True, False, False, SessionState.LOCAL_EOF_SENT),
        (True, True, False, SessionState.LOCAL_DONE),
        (False, True, True, SessionState.PEER_DONE),
        (True, False, True, SessionState.PEER_DONE),
        (True, True, True, SessionState.PEER_DONE),
    ])
    def test_flag_combinations(self, local_eof, window_empty, peer_eof, expected):
        assert derive_state(local_eof, window_empty, peer_eof) == expected

    def test_closed_overrides(self):
        assert derive_state(False, False, False, closed=True) == SessionState.CLOSED
        assert derive_state(True, True, True, closed=True, lingering=True) == SessionState.CLOSED

    def test_lingering_flag(self):
        assert derive_state(True, True, True, lingering=True) == SessionState.LINGERING
