"""
Session - the sliding-window ARQ state machine for one connection.

This module brings the protocol components together:
- Packet codec for building and validating packets
- Send window holding unacknowledged packets
- Retransmission timer driving resend sweeps
- Sequence bookkeeping for both directions

A Session reacts to four events delivered by its environment:
1. Input available: local bytes can be read and sent
2. Packet received: a datagram arrived from the peer
3. Output ready: the local sink can take more bytes
4. Timer tick: the global clock ticked

Each event runs to completion under the session's lock, so no two events
interleave their updates of the window or the cursors.

Acknowledgments are cumulative: ack_num N means "every packet below N has
arrived". Acks ride on outgoing data packets whenever possible. When there
is no outgoing data, a standalone ack goes out immediately if nothing is in
flight, and otherwise no later than the next timer tick.
"""

import math
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from .packet import (
    AckPacket, ChecksumFunc, CorruptPacketError, DataPacket, MAX_PAYLOAD_SIZE,
    decode, encode_ack, encode_data, internet_checksum,
    seq_add, seq_lt
)
from .states import SessionState, derive_state
from .streams import ByteSink, ByteSource, Channel, ChannelError
from .timer import RetransmissionTimer
from .window import SendWindow, WindowEntry


logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Invalid session configuration."""


@dataclass
class SessionConfig:
    """Configuration options for a session."""

    # Capacity of the send window, in packets
    window_size: int = 8

    # Retransmission interval
    timeout_ms: int = 1000

    # Maximum payload per data packet
    max_segment_size: int = 500

    # Period of the global clock
    tick_ms: int = 100

    # Ticks to keep answering retransmitted EOFs after both directions finish
    linger_ticks: int = 0

    # 16-bit integrity function shared by both peers
    checksum: ChecksumFunc = internet_checksum

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigurationError if any option is out of range."""
        if self.window_size < 1:
            raise ConfigurationError(f"window_size must be at least 1, got {self.window_size}")
        if self.timeout_ms <= 0:
            raise ConfigurationError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.tick_ms <= 0:
            raise ConfigurationError(f"tick_ms must be positive, got {self.tick_ms}")
        if not 1 <= self.max_segment_size <= MAX_PAYLOAD_SIZE:
            raise ConfigurationError(
                f"max_segment_size must be in 1..{MAX_PAYLOAD_SIZE}, got {self.max_segment_size}"
            )
        if self.linger_ticks < 0:
            raise ConfigurationError(f"linger_ticks must not be negative, got {self.linger_ticks}")
        if not callable(self.checksum):
            raise ConfigurationError("checksum must be callable")

    @property
    def timeout_ticks(self) -> int:
        """Retransmission interval expressed in clock ticks."""
        return max(1, math.ceil(self.timeout_ms / self.tick_ms))


@dataclass
class SessionStats:
    """Counters describing a session's traffic."""
    packets_sent: int = 0
    packets_resent: int = 0
    acks_sent: int = 0
    packets_received: int = 0
    packets_acked: int = 0
    bytes_read: int = 0
    bytes_delivered: int = 0
    corrupt_dropped: int = 0
    duplicates_dropped: int = 0
    out_of_window_dropped: int = 0
    backpressure_dropped: int = 0
    resend_sweeps: int = 0


class Session:
    """
    One end of a reliable byte stream.

    Usage:
        session = Session(channel, source, sink, SessionConfig(window_size=4))
        session.on_input_available()        # local data ready
        session.on_packet_received(raw)     # datagram from the peer
        session.on_timer_tick()             # global clock

    The session destroys itself once its own EOF has been acknowledged and
    the peer's EOF has been delivered to the sink.
    """

    def __init__(self, channel: Channel, source: ByteSource, sink: ByteSink,
                 config: Optional[SessionConfig] = None,
                 on_closed: Optional[Callable[["Session"], None]] = None):
        """
        Create a session.

        Args:
            channel: Datagram channel to the peer
            source: Local bytes to send
            sink: Destination for bytes received from the peer
            config: Session options (validated before anything is allocated)
            on_closed: Called with the session once it is destroyed

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config = config or SessionConfig()
        self.config.validate()

        # Assigned by the registry
        self.session_id: Optional[int] = None

        self._channel = channel
        self._source = source
        self._sink = sink

        self._window = SendWindow(self.config.window_size)
        self._timer = RetransmissionTimer(self.config.timeout_ticks)

        # Cursors: next sequence number to assign, next one expected from peer
        self._next_seq = 1
        self._next_ack = 1

        # Sending side
        self._source_eof = False   # source reported EOF
        self._local_eof = False    # EOF packet emitted

        # Receiving side
        self._peer_eof = False
        self._eof_delivered = False
        self._pending_ack = False
        self._reorder: Dict[int, bytes] = {}
        self._delivery: Deque[bytes] = deque()

        # Teardown
        self._lingering = False
        self._linger_remaining = 0
        self._closed = False
        self._close_callbacks: List[Callable[["Session"], None]] = []
        if on_closed:
            self._close_callbacks.append(on_closed)

        self.stats = SessionStats()

        self._lock = threading.RLock()

        logger.info(f"Session created: window={self.config.window_size}, "
                    f"timeout={self.config.timeout_ms}ms, mss={self.config.max_segment_size}")

    # ========== State ==========

    @property
    def state(self) -> SessionState:
        with self._lock:
            return derive_state(
                local_eof=self._local_eof,
                window_empty=self._window.is_empty(),
                peer_eof=self._peer_eof,
                closed=self._closed,
                lingering=self._lingering
            )

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def window(self) -> SendWindow:
        return self._window

    @property
    def occupancy(self) -> int:
        return self._window.occupancy

    @property
    def next_seq(self) -> int:
        return self._next_seq

    @property
    def next_ack(self) -> int:
        return self._next_ack

    @property
    def pending_ack(self) -> bool:
        return self._pending_ack

    @property
    def local_eof(self) -> bool:
        return self._local_eof

    @property
    def peer_eof(self) -> bool:
        return self._peer_eof

    @property
    def timer(self) -> RetransmissionTimer:
        return self._timer

    def add_close_callback(self, callback: Callable[["Session"], None]):
        """Register a function to call when the session is destroyed."""
        with self._lock:
            if self._closed:
                callback(self)
                return
            self._close_callbacks.append(callback)

    # ========== Events ==========

    def on_input_available(self):
        """Local bytes may be ready: fill the window from the source."""
        self._dispatch("input", self._read_input)

    def on_packet_received(self, raw: bytes):
        """A datagram arrived from the peer."""
        self._dispatch("packet", self._handle_packet, raw)

    def on_output_ready(self):
        """The sink can accept more bytes."""
        self._dispatch("output", self._handle_output_ready)

    def on_timer_tick(self):
        """The global clock ticked."""
        self._dispatch("tick", self._handle_tick)

    def close(self, reason: str = "closed by application"):
        """Destroy the session. Safe to call more than once."""
        with self._lock:
            self._destroy(reason)

    def _dispatch(self, event: str, handler: Callable, *args):
        """
        Run one event handler as a critical section.

        Events for a destroyed session are ignored. A channel failure is
        fatal: the session is destroyed and the error propagates.
        """
        with self._lock:
            if self._closed:
                logger.debug(f"Ignoring {event} event on closed session {self.session_id}")
                return
            try:
                handler(*args)
            except ChannelError as e:
                logger.error(f"Channel failure in session {self.session_id}: {e}")
                self._destroy("channel failure")
                raise

    # ========== Sending ==========

    def _read_input(self):
        """
        Read from the source while the window has free slots.

        Each chunk becomes one data packet carrying the current cumulative
        ack. EOF from the source becomes an empty data packet that takes its
        own sequence number and window slot like any other.
        """
        while not self._local_eof and self._window.free_slots() > 0:
            if self._source_eof:
                self._emit(b"")
                self._local_eof = True
                logger.debug(f"Session {self.session_id}: local EOF sent as seq={seq_add(self._next_seq, -1)}")
                break

            data, eof = self._source.read(self.config.max_segment_size)
            if eof:
                self._source_eof = True
            if data:
                self.stats.bytes_read += len(data)
                self._emit(data)
            elif not eof:
                # Nothing to read right now
                break

    def _emit(self, payload: bytes):
        """Build, track and send the next data packet."""
        seq = self._next_seq
        raw = encode_data(
            seq, self._next_ack, payload,
            checksum=self.config.checksum,
            max_segment_size=self.config.max_segment_size
        )
        if not self._window.push(WindowEntry(seq_num=seq, raw=raw)):
            # Callers check free_slots() first
            raise RuntimeError("Send window full")

        self._next_seq = seq_add(seq, 1)
        # The packet carries our cumulative ack
        self._pending_ack = False

        self._transmit(raw)
        self.stats.packets_sent += 1
        logger.debug(f"Sent data: seq={seq}, ack={self._next_ack}, len={len(payload)}")

    def _send_ack(self):
        """Send a standalone cumulative ack."""
        raw = encode_ack(self._next_ack, checksum=self.config.checksum)
        self._pending_ack = False
        self._transmit(raw)
        self.stats.acks_sent += 1
        logger.debug(f"Sent ACK: ack={self._next_ack}")

    def _transmit(self, raw: bytes):
        """Hand wire bytes to the channel."""
        try:
            self._channel.send(raw)
        except ChannelError:
            raise
        except OSError as e:
            raise ChannelError(f"Channel send failed: {e}") from e

    # ========== Receiving ==========

    def _handle_packet(self, raw: bytes):
        try:
            packet = decode(raw, checksum=self.config.checksum)
        except CorruptPacketError as e:
            # Never acked, so the sender's timer recovers it
            self.stats.corrupt_dropped += 1
            logger.debug(f"Dropped corrupt packet: {e}")
            return

        self.stats.packets_received += 1

        if isinstance(packet, DataPacket):
            self._receive_data(packet)

        # Data packets carry a piggybacked ack too
        self._process_ack(packet.ack_num)

        if self._pending_ack and self._window.is_empty():
            self._send_ack()

        self._check_finished()

    def _process_ack(self, ack_num: int):
        """
        Apply a cumulative ack: pop every packet below ack_num.

        Freed slots are refilled from the source right away.
        """
        if seq_lt(self._next_seq, ack_num):
            logger.warning(f"Ignoring ack {ack_num} beyond next_seq {self._next_seq}")
            return

        acked = self._window.acknowledge(ack_num)
        if not acked:
            return

        self.stats.packets_acked += len(acked)
        self._read_input()

    def _receive_data(self, packet: DataPacket):
        """
        Accept a data packet from the peer.

        In-order packets are delivered, packets ahead of the expected one
        are held until the gap fills, duplicates are dropped. Every case
        leaves an ack pending so the peer learns our position.
        """
        seq = packet.seq_num
        self._pending_ack = True

        if seq_lt(seq, self._next_ack):
            self.stats.duplicates_dropped += 1
            logger.debug(f"Duplicate data: seq={seq}, expecting {self._next_ack}")
            return

        if self._peer_eof:
            # Nothing follows the peer's EOF
            self.stats.out_of_window_dropped += 1
            logger.debug(f"Data after peer EOF: seq={seq}")
            return

        if seq == self._next_ack:
            if not self._accept_in_order(packet.payload):
                return
            self._reorder.pop(seq, None)
            self._drain_reorder_buffer()
            return

        # Ahead of the expected packet
        if not seq_lt(seq, seq_add(self._next_ack, self.config.window_size)):
            self.stats.out_of_window_dropped += 1
            logger.debug(f"Out of window data: seq={seq}, expecting {self._next_ack}")
            return

        if seq in self._reorder:
            self.stats.duplicates_dropped += 1
            return
        self._reorder[seq] = packet.payload
        logger.debug(f"Holding out of order data: seq={seq}, expecting {self._next_ack}")

    def _accept_in_order(self, payload: bytes) -> bool:
        """
        Consume the packet at next_ack.

        Returns False when the delivery queue is full; the packet is then
        left unacknowledged and will be retransmitted.
        """
        if not payload:
            self._peer_eof = True
            self._next_ack = seq_add(self._next_ack, 1)
            self._reorder.clear()
            logger.info(f"Session {self.session_id}: peer EOF received")
            self._flush_output()
            return True

        if len(self._delivery) >= self.config.window_size:
            self.stats.backpressure_dropped += 1
            logger.debug(f"Sink backlog full, dropping seq={self._next_ack}")
            return False

        self._delivery.append(payload)
        self._next_ack = seq_add(self._next_ack, 1)
        self._flush_output()
        return True

    def _drain_reorder_buffer(self):
        while self._next_ack in self._reorder:
            payload = self._reorder[self._next_ack]
            if not self._accept_in_order(payload):
                break
            # EOF clears the buffer itself
            self._reorder.pop(seq_add(self._next_ack, -1), None)

    def _flush_output(self):
        """
        Offer queued payload to the sink.

        Stops at the first partial write. Once everything before the peer's
        EOF has been accepted, the sink is told the stream ended.
        """
        while self._delivery:
            chunk = self._delivery[0]
            accepted = self._sink.write(chunk)
            self.stats.bytes_delivered += accepted
            if accepted < len(chunk):
                self._delivery[0] = chunk[accepted:]
                return
            self._delivery.popleft()

        if self._peer_eof and not self._eof_delivered:
            self._eof_delivered = True
            self._sink.signal_eof()

    def _handle_output_ready(self):
        next_ack = self._next_ack
        self._flush_output()
        # Held packets may have been waiting on a full delivery queue
        self._drain_reorder_buffer()
        if self._next_ack != next_ack:
            self._pending_ack = True
            if self._window.is_empty():
                self._send_ack()
        self._check_finished()

    # ========== Timer ==========

    def _handle_tick(self):
        """
        One tick of the global clock.

        Flushes a deferred ack, then counts down the retransmission timer.
        On expiry, every packet that was already outstanding at the previous
        sweep is resent byte for byte.
        """
        if self._pending_ack:
            self._send_ack()

        if self._lingering:
            self._linger_remaining -= 1
            if self._linger_remaining <= 0:
                self._destroy("linger period over")
            return

        if not self._timer.tick():
            return

        if not self._window.is_empty():
            self.stats.resend_sweeps += 1
            for entry in self._window:
                if self._timer.eligible(entry.seq_num):
                    entry.retransmit_count += 1
                    self._transmit(entry.raw)
                    self.stats.packets_resent += 1
                    logger.debug(f"Retransmitted: seq={entry.seq_num} "
                                 f"(attempt {entry.retransmit_count})")

        newest = self._window.peek_newest()
        self._timer.record_sweep(newest.seq_num if newest else None)

    # ========== Teardown ==========

    def _check_finished(self):
        """
        Destroy the session once both directions are done.

        Done means: our EOF was sent and everything acknowledged, and the
        peer's EOF was received with all preceding bytes handed to the sink.
        """
        if self._closed or self._lingering:
            return
        if not (self._local_eof and self._window.is_empty()):
            return
        if not (self._peer_eof and self._eof_delivered):
            return

        if self.config.linger_ticks > 0:
            self._lingering = True
            self._linger_remaining = self.config.linger_ticks
            logger.debug(f"Session {self.session_id}: lingering for {self.config.linger_ticks} ticks")
        else:
            self._destroy("both directions finished")

    def _destroy(self, reason: str):
        if self._closed:
            return
        self._closed = True
        self._delivery.clear()
        self._reorder.clear()

        logger.info(f"Session {self.session_id} closed: {reason}")

        callbacks = list(self._close_callbacks)
        self._close_callbacks.clear()
        for callback in callbacks:
            callback(self)

    # ========== Statistics and Debugging ==========

    def get_statistics(self) -> dict:
        """Get session statistics."""
        with self._lock:
            return {
                "state": self.state.name,
                "occupancy": self._window.occupancy,
                "window_size": self._window.capacity,
                "next_seq": self._next_seq,
                "next_ack": self._next_ack,
                "pending_ack": self._pending_ack,
                "watermark": self._timer.watermark,
                "packets_sent": self.stats.packets_sent,
                "packets_resent": self.stats.packets_resent,
                "acks_sent": self.stats.acks_sent,
                "bytes_delivered": self.stats.bytes_delivered,
                "corrupt_dropped": self.stats.corrupt_dropped,
            }

    def __str__(self) -> str:
        return f"Session({self.session_id}, state={self.state.name}, window={self._window})"
