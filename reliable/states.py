"""
Session States - naming the lifecycle of a session.

A session has no explicit state variable. Its state follows from three facts:
whether the local byte source reached EOF, whether the send window has
drained, and whether the peer's EOF packet arrived. This module gives the
combinations names so they can be logged, reported and tested.

    OPEN ----local EOF read----> LOCAL_EOF_SENT ---window drained---> LOCAL_DONE
      |                               |                                   |
      | peer EOF                      | peer EOF                          | peer EOF
      v                               v                                   v
    PEER_DONE ------------------------+--------> (both done) ---> LINGERING ---> CLOSED
"""

from enum import Enum, auto


class SessionState(Enum):
    """Lifecycle states derived from the session's flags."""

    # Both directions still carry data
    OPEN = auto()

    # Local EOF packet emitted, window still holds unacknowledged packets
    LOCAL_EOF_SENT = auto()

    # Everything we sent, EOF included, has been acknowledged
    LOCAL_DONE = auto()

    # Peer's EOF received; we are still sending or the sink is still
    # taking the peer's last bytes
    PEER_DONE = auto()

    # Both directions finished, waiting out the linger period
    LINGERING = auto()

    # Session destroyed
    CLOSED = auto()

    def can_send_data(self) -> bool:
        """Check if new local data may still be emitted."""
        return self in (SessionState.OPEN, SessionState.PEER_DONE)

    def can_receive_data(self) -> bool:
        """Check if payload from the peer is still expected."""
        return self in (
            SessionState.OPEN,
            SessionState.LOCAL_EOF_SENT,
            SessionState.LOCAL_DONE
        )

    def is_closing(self) -> bool:
        return self in (
            SessionState.LOCAL_EOF_SENT,
            SessionState.LOCAL_DONE,
            SessionState.PEER_DONE,
            SessionState.LINGERING
        )


def derive_state(local_eof: bool, window_empty: bool, peer_eof: bool,
                 closed: bool = False, lingering: bool = False) -> SessionState:
    """
    Map the session's flags to a SessionState.

    Args:
        local_eof: The local source reported EOF and the EOF packet was emitted
        window_empty: No packets are awaiting acknowledgment
        peer_eof: The peer's EOF packet was received in order
        closed: The session has been destroyed
        lingering: Both directions finished and the linger countdown runs
    """
    if closed:
        return SessionState.CLOSED
    if lingering:
        return SessionState.LINGERING

    local_done = local_eof and window_empty
    if peer_eof:
        # Stays here until teardown starts, even once local is done
        return SessionState.PEER_DONE
    if local_done:
        return SessionState.LOCAL_DONE
    if local_eof:
        return SessionState.LOCAL_EOF_SENT
    return SessionState.OPEN
