"""
Tests for the session registry and its global tick.
"""

import time
from reliable.packet import encode_ack, encode_data
from reliable.registry import SessionRegistry
from reliable.session import Session, SessionConfig
from reliable.streams import BufferSink, BytesSource, Channel


class ListChannel(Channel):
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, data: bytes):
        if self.fail:
            raise OSError("unreachable")
        self.sent.append(data)


def make_session(data=b"", **config):
    config.setdefault("timeout_ms", 100)
    config.setdefault("tick_ms", 100)
    channel = ListChannel()
    session = Session(channel, BytesSource(data), BufferSink(), SessionConfig(**config))
    return session, channel


def finish_locally(session):
    """Send our EOF and have the peer acknowledge it and send its own EOF."""
    session.on_input_available()
    session.on_packet_received(encode_ack(session.next_seq))
    session.on_packet_received(encode_data(1, session.next_seq, b""))


class TestRegistry:
    """Test adding, finding and removing sessions."""

    def test_add_assigns_ids(self):
        registry = SessionRegistry()
        first, _ = make_session()
        second, _ = make_session()

        assert registry.add(first) == 1
        assert registry.add(second) == 2
        assert first.session_id == 1
        assert len(registry) == 2
        assert 2 in registry
        assert registry.get(1) is first
        assert registry.get(99) is None

    def test_remove_once(self):
        registry = SessionRegistry()
        session, _ = make_session()
        session_id = registry.add(session)

        assert registry.remove(session_id)
        assert not registry.remove(session_id)
        assert len(registry) == 0

    def test_destroyed_session_removes_itself(self):
        registry = SessionRegistry()
        session, _ = make_session()
        session_id = registry.add(session)

        session.close()
        assert session_id not in registry

        # Closing again does not touch the registry
        session.close()
        assert len(registry) == 0

    def test_finished_session_removed(self):
        registry = SessionRegistry()
        session, _ = make_session()
        registry.add(session)

        finish_locally(session)
        assert session.is_closed
        assert len(registry) == 0

    def test_iteration_is_snapshot(self):
        registry = SessionRegistry()
        sessions = [make_session()[0] for _ in range(3)]
        for session in sessions:
            registry.add(session)

        for session in registry:
            session.close()
        assert len(registry) == 0


class TestTick:
    """Test the global clock sweep."""

    def test_tick_reaches_every_session(self):
        registry = SessionRegistry()
        sessions = [make_session(b"payload")[0] for _ in range(3)]
        for session in sessions:
            registry.add(session)
            session.on_input_available()

        registry.tick()
        registry.tick()
        for session in sessions:
            # Payload packet and EOF packet
            assert session.stats.packets_resent == 2

    def test_session_destroyed_mid_tick(self):
        """A session finishing its linger during the sweep does not break it."""
        registry = SessionRegistry()
        lingering, _ = make_session(linger_ticks=1)
        others = [make_session(b"data")[0] for _ in range(2)]

        registry.add(lingering)
        for session in others:
            registry.add(session)
            session.on_input_available()
        finish_locally(lingering)
        assert not lingering.is_closed

        registry.tick()
        assert lingering.is_closed
        assert lingering.session_id not in registry
        assert len(registry) == 2
        for session in others:
            assert session.timer.sweep_count == 1

    def test_channel_failure_isolated(self):
        registry = SessionRegistry()
        broken, broken_channel = make_session(b"data")
        healthy, _ = make_session(b"data")
        for session in (broken, healthy):
            registry.add(session)
            session.on_input_available()

        registry.tick()
        broken_channel.fail = True
        registry.tick()

        assert broken.is_closed
        assert broken.session_id not in registry
        assert not healthy.is_closed
        assert healthy.stats.packets_resent == 2

    def test_background_ticker(self):
        registry = SessionRegistry()
        session, channel = make_session(b"data", timeout_ms=10, tick_ms=10)
        registry.add(session)
        session.on_input_available()

        ticker = registry.start_ticker()
        try:
            deadline = time.monotonic() + 2.0
            while session.stats.packets_resent < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            registry.stop_ticker()

        assert session.stats.packets_resent >= 2
        assert not ticker.is_running()
