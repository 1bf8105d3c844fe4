"""
Reliable Stream - in-order, exactly-once byte delivery over lossy datagrams.

This package implements a sliding-window ARQ protocol engine: packets carry
a sequence number, a cumulative acknowledgment and a checksum; unacknowledged
packets wait in a fixed-size send window and are resent on timeout until
the peer acknowledges them.
"""

from .packet import (
    DataPacket, AckPacket, CorruptPacketError,
    encode_data, encode_ack, decode, internet_checksum
)
from .window import SendWindow, WindowEntry
from .states import SessionState
from .timer import RetransmissionTimer, PeriodicTicker
from .streams import (
    Channel, ByteSource, ByteSink, ChannelError,
    BytesSource, BufferSink, FileSource, FileSink, UdpChannel
)
from .session import Session, SessionConfig, SessionStats, ConfigurationError
from .registry import SessionRegistry
from .endpoint import Endpoint

__version__ = "1.0.0"

__all__ = [
    "DataPacket",
    "AckPacket",
    "CorruptPacketError",
    "encode_data",
    "encode_ack",
    "decode",
    "internet_checksum",
    "SendWindow",
    "WindowEntry",
    "SessionState",
    "RetransmissionTimer",
    "PeriodicTicker",
    "Channel",
    "ByteSource",
    "ByteSink",
    "ChannelError",
    "BytesSource",
    "BufferSink",
    "FileSource",
    "FileSink",
    "UdpChannel",
    "Session",
    "SessionConfig",
    "SessionStats",
    "ConfigurationError",
    "SessionRegistry",
    "Endpoint",
]
