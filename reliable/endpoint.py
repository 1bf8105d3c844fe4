"""
Endpoint - runs one session against a live channel.

The session itself is purely event driven. An Endpoint supplies the events:
- a receive thread feeding every datagram to on_packet_received()
- the registry's global ticker delivering on_timer_tick()
- an initial on_input_available() (later reads are triggered by acks)

Usage:
    channel = UdpChannel(("0.0.0.0", 9000), ("10.0.0.2", 9000))
    with open("payload.bin", "rb") as f:
        endpoint = Endpoint(channel, FileSource(f), BufferSink())
        endpoint.start()
        endpoint.wait(timeout=60.0)
"""

import logging
import threading
from typing import Optional

from .registry import SessionRegistry
from .session import Session, SessionConfig
from .streams import ByteSink, ByteSource, Channel, ChannelError


logger = logging.getLogger(__name__)


class Endpoint:
    """Drives a single Session over a Channel."""

    # How long the receive thread blocks before re-checking for shutdown
    POLL_INTERVAL = 0.1

    def __init__(self, channel: Channel, source: ByteSource, sink: ByteSink,
                 config: Optional[SessionConfig] = None,
                 registry: Optional[SessionRegistry] = None):
        """
        Args:
            channel: Datagram channel to the peer
            source: Local bytes to send
            sink: Destination for the peer's bytes
            config: Session options
            registry: Registry to join; a private one is created if omitted
        """
        self._channel = channel
        self._registry = registry or SessionRegistry()
        self._owns_registry = registry is None

        self._closed_event = threading.Event()
        self.error: Optional[BaseException] = None

        self.session = Session(channel, source, sink, config,
                               on_closed=lambda s: self._closed_event.set())
        self._registry.add(self.session)

        self._running = False
        self._recv_thread: Optional[threading.Thread] = None

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def start(self):
        """Start receiving and ticking, then send whatever input is ready."""
        if self._running:
            return

        self._running = True
        self._recv_thread = threading.Thread(target=self._receive_loop, daemon=True)
        self._recv_thread.start()
        self._registry.start_ticker(self.session.config.tick_ms / 1000.0)

        self._run_event(self.session.on_input_available)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the session is destroyed.

        Returns:
            True if the session finished, False on timeout
        """
        return self._closed_event.wait(timeout=timeout)

    def stop(self):
        """Tear down the session and release the channel."""
        self._running = False
        self.session.close("endpoint stopped")
        if self._owns_registry:
            self._registry.stop_ticker()
        self._channel.close()
        if self._recv_thread and self._recv_thread is not threading.current_thread():
            self._recv_thread.join(timeout=1.0)

    def _receive_loop(self):
        """Feed incoming datagrams to the session until it closes."""
        while self._running and not self.session.is_closed:
            try:
                raw = self._channel.receive(timeout=self.POLL_INTERVAL)
            except ChannelError as e:
                if self._running:
                    logger.error(f"Receive failed: {e}")
                    self.error = e
                    self.session.close("channel failure")
                return

            if raw is None:
                continue
            self._run_event(self.session.on_packet_received, raw)

    def _run_event(self, handler, *args):
        try:
            handler(*args)
        except ChannelError as e:
            # The session has already torn itself down
            self.error = e
            self._closed_event.set()

    def __enter__(self) -> "Endpoint":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
