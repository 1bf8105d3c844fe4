"""
Packet Codec - Parsing and construction of data and ack packets.

Two packet variants travel over the datagram channel. They are told apart
by their total length: an ack packet is always exactly ACK_HEADER_SIZE bytes,
anything longer is a data packet.

Data packet (12 byte header + payload):

     0                   1                   2                   3
     0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |           Checksum            |   Sequence Number (high)      |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |   Sequence Number (low)       |    Ack Number (high)          |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |    Ack Number (low)           |            Length             |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                            payload                            |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+

Ack packet (8 bytes):

    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |           Checksum            |       Ack Number (high)       |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |       Ack Number (low)        |            Length             |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+

Length covers header and payload. A data packet with an empty payload marks
end-of-stream (EOF) for its sequence position.

The checksum is computed over the whole packet with the checksum field set
to zero. It is the only thing that separates a corrupted packet from a valid
one on receipt.
"""

import struct
from dataclasses import dataclass, field
from typing import Callable, Optional, Union


DATA_HEADER_FORMAT = "!HIIH"
ACK_HEADER_FORMAT = "!HIH"

DATA_HEADER_SIZE = struct.calcsize(DATA_HEADER_FORMAT)  # 12
ACK_HEADER_SIZE = struct.calcsize(ACK_HEADER_FORMAT)    # 8

# Length is a 16-bit field that includes the header
MAX_PAYLOAD_SIZE = 0xFFFF - DATA_HEADER_SIZE

SEQ_MODULUS = 2**32
SEQ_MASK = SEQ_MODULUS - 1

ChecksumFunc = Callable[[bytes], int]


class CorruptPacketError(ValueError):
    """Raised when a received datagram fails length or checksum validation."""


def internet_checksum(data: bytes) -> int:
    """
    One's complement sum of 16-bit words, then one's complement of the result.

    Odd-length input is padded with a zero byte. Any single flipped bit
    changes the result.
    """
    if len(data) % 2:
        data += b'\x00'

    total = 0
    for i in range(0, len(data), 2):
        total += (data[i] << 8) + data[i + 1]
        # Fold carry back into the low 16 bits
        total = (total & 0xFFFF) + (total >> 16)

    return ~total & 0xFFFF


# Sequence number arithmetic (serial number comparison over 32 bits)

def seq_add(seq: int, n: int) -> int:
    """Advance a sequence number by n, wrapping at 2**32."""
    return (seq + n) & SEQ_MASK


def seq_lt(a: int, b: int) -> bool:
    """True if a comes strictly before b in sequence space."""
    return a != b and ((b - a) & SEQ_MASK) < SEQ_MODULUS // 2


def seq_le(a: int, b: int) -> bool:
    """True if a comes before or equals b in sequence space."""
    return a == b or seq_lt(a, b)


def _check_u32(name: str, value: int):
    if not 0 <= value <= SEQ_MASK:
        raise ValueError(f"Invalid {name}: {value}")


@dataclass
class DataPacket:
    """
    A data packet: one sequence-numbered chunk of the byte stream.

    Every data packet also carries the sender's cumulative acknowledgment
    for the opposite direction (piggybacked ack).
    """
    seq_num: int
    ack_num: int
    payload: bytes = field(default_factory=bytes)
    checksum: int = 0  # Filled in by serialize() / decode()

    def __post_init__(self):
        _check_u32("sequence number", self.seq_num)
        _check_u32("acknowledgment number", self.ack_num)
        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise ValueError(f"Payload too large: {len(self.payload)} bytes")

    @property
    def length(self) -> int:
        """Declared length on the wire (header + payload)."""
        return DATA_HEADER_SIZE + len(self.payload)

    @property
    def payload_length(self) -> int:
        return len(self.payload)

    @property
    def is_eof(self) -> bool:
        """An empty payload marks the end of the sender's byte stream."""
        return not self.payload

    def serialize(self, checksum: ChecksumFunc = internet_checksum) -> bytes:
        """Serialize to wire bytes, computing the checksum."""
        header = struct.pack(
            DATA_HEADER_FORMAT,
            0,  # Checksum placeholder
            self.seq_num,
            self.ack_num,
            self.length
        )
        self.checksum = checksum(header + self.payload) & 0xFFFF
        return struct.pack("!H", self.checksum) + header[2:] + self.payload

    def __str__(self) -> str:
        kind = "EOF" if self.is_eof else "DATA"
        return f"{kind} seq={self.seq_num} ack={self.ack_num} len={self.payload_length}"


@dataclass
class AckPacket:
    """A standalone cumulative acknowledgment."""
    ack_num: int
    checksum: int = 0

    def __post_init__(self):
        _check_u32("acknowledgment number", self.ack_num)

    @property
    def length(self) -> int:
        return ACK_HEADER_SIZE

    def serialize(self, checksum: ChecksumFunc = internet_checksum) -> bytes:
        header = struct.pack(ACK_HEADER_FORMAT, 0, self.ack_num, ACK_HEADER_SIZE)
        self.checksum = checksum(header) & 0xFFFF
        return struct.pack("!H", self.checksum) + header[2:]

    def __str__(self) -> str:
        return f"ACK ack={self.ack_num}"


Packet = Union[DataPacket, AckPacket]


def encode_data(seq_num: int, ack_num: int, payload: bytes,
                checksum: ChecksumFunc = internet_checksum,
                max_segment_size: Optional[int] = None) -> bytes:
    """
    Build the wire bytes of a data packet.

    Raises:
        ValueError: If the payload exceeds max_segment_size or a field is
            out of range
    """
    if max_segment_size is not None and len(payload) > max_segment_size:
        raise ValueError(
            f"Payload of {len(payload)} bytes exceeds segment size {max_segment_size}"
        )
    return DataPacket(seq_num=seq_num, ack_num=ack_num, payload=bytes(payload)).serialize(checksum)


def encode_ack(ack_num: int, checksum: ChecksumFunc = internet_checksum) -> bytes:
    """Build the wire bytes of a standalone ack packet."""
    return AckPacket(ack_num=ack_num).serialize(checksum)


def verify_checksum(raw: bytes, checksum: ChecksumFunc = internet_checksum) -> bool:
    """Recompute the checksum with the checksum field zeroed and compare."""
    if len(raw) < 2:
        return False
    stored = struct.unpack("!H", raw[:2])[0]
    return (checksum(b'\x00\x00' + raw[2:]) & 0xFFFF) == stored


def decode(raw: bytes, checksum: ChecksumFunc = internet_checksum) -> Packet:
    """
    Parse a received datagram.

    Args:
        raw: Datagram bytes as handed over by the channel
        checksum: Checksum primitive shared with the sender

    Returns:
        AckPacket if the datagram is exactly an ack header, else DataPacket

    Raises:
        CorruptPacketError: If the datagram is truncated, its declared length
            does not match the received length, or the checksum fails
    """
    raw = bytes(raw)

    if len(raw) < ACK_HEADER_SIZE:
        raise CorruptPacketError(f"Packet too short: {len(raw)} bytes")

    if len(raw) == ACK_HEADER_SIZE:
        cksum, ack_num, length = struct.unpack(ACK_HEADER_FORMAT, raw)
        if length != ACK_HEADER_SIZE:
            raise CorruptPacketError(f"Ack length mismatch: declared {length}, got {len(raw)}")
        if not verify_checksum(raw, checksum):
            raise CorruptPacketError("Ack checksum mismatch")
        return AckPacket(ack_num=ack_num, checksum=cksum)

    if len(raw) < DATA_HEADER_SIZE:
        raise CorruptPacketError(f"Data packet truncated: {len(raw)} bytes")

    cksum, seq_num, ack_num, length = struct.unpack(DATA_HEADER_FORMAT, raw[:DATA_HEADER_SIZE])
    if length != len(raw):
        raise CorruptPacketError(f"Data length mismatch: declared {length}, got {len(raw)}")
    if not verify_checksum(raw, checksum):
        raise CorruptPacketError(f"Data checksum mismatch (seq={seq_num})")

    return DataPacket(
        seq_num=seq_num,
        ack_num=ack_num,
        payload=raw[DATA_HEADER_SIZE:],
        checksum=cksum
    )


def is_ack(packet: Packet) -> bool:
    return isinstance(packet, AckPacket)


def is_eof(packet: Packet) -> bool:
    return isinstance(packet, DataPacket) and packet.is_eof
