"""
Tests for the threaded endpoint over real UDP sockets on localhost.
"""

import io
import socket
import pytest
from reliable.endpoint import Endpoint
from reliable.session import SessionConfig
from reliable.streams import (
    BufferSink, BytesSource, FileSink, FileSource, UdpChannel, ChannelError
)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def channel_pair():
    port_a, port_b = free_port(), free_port()
    a = UdpChannel(("127.0.0.1", port_a), ("127.0.0.1", port_b))
    b = UdpChannel(("127.0.0.1", port_b), ("127.0.0.1", port_a))
    return a, b


CONFIG = dict(window_size=8, timeout_ms=100, tick_ms=20, max_segment_size=512,
              linger_ticks=5)


class TestUdpChannel:
    """Test the datagram channel."""

    def test_send_receive(self):
        a, b = channel_pair()
        try:
            a.send(b"ping")
            assert b.receive(timeout=2.0) == b"ping"
            assert b.receive(timeout=0.05) is None
        finally:
            a.close()
            b.close()

    def test_closed_channel(self):
        a, b = channel_pair()
        a.close()
        b.close()
        with pytest.raises(ChannelError):
            a.send(b"x")
        with pytest.raises(ChannelError):
            b.receive(timeout=0.01)


class TestEndpoint:
    """Full transfers between two endpoints."""

    def test_bidirectional_transfer(self):
        data_a = bytes(range(256)) * 20
        data_b = b"reply " * 300
        chan_a, chan_b = channel_pair()
        sink_a, sink_b = BufferSink(), BufferSink()

        with Endpoint(chan_a, BytesSource(data_a), sink_a, SessionConfig(**CONFIG)) as a, \
                Endpoint(chan_b, BytesSource(data_b), sink_b, SessionConfig(**CONFIG)) as b:
            assert a.wait(timeout=10.0)
            assert b.wait(timeout=10.0)

        assert sink_b.data == data_a
        assert sink_a.data == data_b
        assert a.error is None
        assert b.error is None

    def test_file_transfer(self):
        payload = b"file contents\n" * 1000
        out = io.BytesIO()
        chan_a, chan_b = channel_pair()
        sink = FileSink(out)

        with Endpoint(chan_a, FileSource(io.BytesIO(payload)), BufferSink(),
                      SessionConfig(**CONFIG)) as sender, \
                Endpoint(chan_b, BytesSource(b""), sink, SessionConfig(**CONFIG)) as receiver:
            assert sink.wait_eof(timeout=10.0)
            assert sender.wait(timeout=10.0)
            assert receiver.wait(timeout=10.0)

        assert out.getvalue() == payload

    def test_stop_before_finish(self):
        chan_a, chan_b = channel_pair()
        endpoint = Endpoint(chan_a, BytesSource(b"nobody listening"), BufferSink(),
                            SessionConfig(**CONFIG))
        endpoint.start()
        assert not endpoint.wait(timeout=0.2)

        endpoint.stop()
        chan_b.close()
        assert endpoint.session.is_closed
        assert len(endpoint.registry) == 0
