"""
Streams - the collaborators a session talks to.

A session never touches sockets or files directly. It works through three
small interfaces:

- Channel: best-effort datagram transport to one peer (may drop, duplicate,
  reorder or corrupt)
- ByteSource: the local bytes waiting to be sent
- ByteSink: where delivered bytes go; may accept fewer bytes than offered

This module defines the interfaces and the implementations used by the
endpoint driver, the example program and the tests.
"""

import socket
import threading
import logging
from typing import BinaryIO, Optional, Tuple


logger = logging.getLogger(__name__)


class ChannelError(RuntimeError):
    """The underlying channel became permanently unusable."""


class Channel:
    """
    Abstract datagram channel to a single peer.

    Demultiplexing is the host's job: everything receive() returns is
    already addressed to this session.
    """

    def send(self, data: bytes):
        """Send one datagram. Raises ChannelError if the channel is dead."""
        raise NotImplementedError

    def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Return the next datagram, or None if none arrived within timeout."""
        raise NotImplementedError

    def close(self):
        pass


class ByteSource:
    """Abstract source of outgoing bytes."""

    def read(self, max_len: int) -> Tuple[bytes, bool]:
        """
        Read up to max_len bytes.

        Returns:
            Tuple of (data, is_eof). An empty non-EOF result means nothing
            is available right now.
        """
        raise NotImplementedError


class ByteSink:
    """Abstract destination for delivered bytes."""

    def write(self, data: bytes) -> int:
        """Offer bytes; returns how many were accepted (may be fewer)."""
        raise NotImplementedError

    def signal_eof(self):
        """The peer's stream ended. Called exactly once."""
        raise NotImplementedError


class BytesSource(ByteSource):
    """Serves a fixed bytes object, then reports EOF."""

    def __init__(self, data: bytes = b""):
        self._data = bytes(data)
        self._offset = 0
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def read(self, max_len: int) -> Tuple[bytes, bool]:
        with self._lock:
            chunk = self._data[self._offset:self._offset + max_len]
            self._offset += len(chunk)
            if not chunk:
                return (b"", True)
            return (chunk, False)


class BufferSink(ByteSink):
    """
    Collects delivered bytes in memory.

    With a capacity, the sink applies backpressure: write() accepts only what
    fits, and drain() hands the collected bytes to the caller, making room.
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        self._buffer = bytearray()
        self._drained = bytearray()
        self._eof = threading.Event()
        self._eof_count = 0
        self._lock = threading.Lock()

    @property
    def eof(self) -> bool:
        return self._eof.is_set()

    @property
    def eof_count(self) -> int:
        """How many times signal_eof() was called."""
        return self._eof_count

    @property
    def data(self) -> bytes:
        """Everything delivered so far, drained or not."""
        with self._lock:
            return bytes(self._drained + self._buffer)

    def write(self, data: bytes) -> int:
        with self._lock:
            if self.capacity is None:
                accepted = len(data)
            else:
                accepted = max(0, min(len(data), self.capacity - len(self._buffer)))
            self._buffer.extend(data[:accepted])
            return accepted

    def drain(self) -> bytes:
        """Remove and return the buffered bytes."""
        with self._lock:
            chunk = bytes(self._buffer)
            self._drained.extend(chunk)
            self._buffer.clear()
            return chunk

    def signal_eof(self):
        with self._lock:
            self._eof_count += 1
        self._eof.set()

    def wait_eof(self, timeout: Optional[float] = None) -> bool:
        return self._eof.wait(timeout=timeout)


class FileSource(ByteSource):
    """Reads outgoing bytes from a binary file object."""

    def __init__(self, fileobj: BinaryIO):
        self._file = fileobj

    def read(self, max_len: int) -> Tuple[bytes, bool]:
        chunk = self._file.read(max_len)
        if not chunk:
            return (b"", True)
        return (chunk, False)


class FileSink(ByteSink):
    """Writes delivered bytes to a binary file object."""

    def __init__(self, fileobj: BinaryIO, close_on_eof: bool = False):
        self._file = fileobj
        self._close_on_eof = close_on_eof
        self._eof = threading.Event()

    def write(self, data: bytes) -> int:
        written = self._file.write(data)
        return len(data) if written is None else written

    def signal_eof(self):
        self._file.flush()
        if self._close_on_eof:
            self._file.close()
        self._eof.set()

    def wait_eof(self, timeout: Optional[float] = None) -> bool:
        return self._eof.wait(timeout=timeout)


class UdpChannel(Channel):
    """
    Channel over a connected UDP socket.

    Datagrams from any address other than the peer are discarded by the
    kernel, so receive() only ever sees this session's traffic.
    """

    MAX_DATAGRAM = 65535

    def __init__(self, local_addr: Tuple[str, int], remote_addr: Tuple[str, int]):
        """
        Args:
            local_addr: (ip, port) to bind; port 0 picks an ephemeral port
            remote_addr: (ip, port) of the peer
        """
        self.remote_addr = remote_addr
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._sock.bind(local_addr)
            self._sock.connect(remote_addr)
        except OSError:
            self._sock.close()
            raise
        self._local_addr = self._sock.getsockname()
        self._closed = False

    @property
    def local_addr(self) -> Tuple[str, int]:
        return self._local_addr

    def send(self, data: bytes):
        if self._closed:
            raise ChannelError("Channel is closed")
        try:
            self._sock.send(data)
        except ConnectionRefusedError:
            # ICMP port unreachable from a peer that is not up yet; the
            # datagram is simply lost
            logger.debug(f"Peer {self.remote_addr} refused datagram")
        except OSError as e:
            raise ChannelError(f"UDP send failed: {e}") from e

    def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        if self._closed:
            raise ChannelError("Channel is closed")
        self._sock.settimeout(timeout)
        try:
            return self._sock.recv(self.MAX_DATAGRAM)
        except socket.timeout:
            return None
        except ConnectionRefusedError:
            return None
        except OSError as e:
            if self._closed:
                return None
            raise ChannelError(f"UDP receive failed: {e}") from e

    def close(self):
        if not self._closed:
            self._closed = True
            self._sock.close()

    def __str__(self) -> str:
        return f"UdpChannel({self.local_addr} -> {self.remote_addr})"
