"""
Tests for packet encoding, decoding and corruption detection.
"""

import pytest
import struct
from reliable.packet import (
    DataPacket, AckPacket, CorruptPacketError,
    ACK_HEADER_SIZE, DATA_HEADER_SIZE,
    encode_data, encode_ack, decode, verify_checksum,
    internet_checksum, is_ack, is_eof,
    seq_add, seq_lt, seq_le
)


class TestWireLayout:
    """Test the bit-exact wire format."""

    def test_header_sizes(self):
        """Data header is 12 bytes, ack packet is 8 bytes."""
        assert DATA_HEADER_SIZE == 12
        assert ACK_HEADER_SIZE == 8

    def test_data_packet_fields(self):
        """Fields are in network byte order after the checksum."""
        raw = encode_data(seq_num=7, ack_num=3, payload=b"hello")

        assert len(raw) == DATA_HEADER_SIZE + 5
        _, seq, ack, length = struct.unpack("!HIIH", raw[:12])
        assert seq == 7
        assert ack == 3
        assert length == 17
        assert raw[12:] == b"hello"

    def test_ack_packet_fields(self):
        """Ack packet carries only checksum, ack number and length."""
        raw = encode_ack(42)

        assert len(raw) == ACK_HEADER_SIZE
        _, ack, length = struct.unpack("!HIH", raw)
        assert ack == 42
        assert length == ACK_HEADER_SIZE

    def test_checksum_over_zeroed_field(self):
        """Stored checksum equals the checksum of the packet with the field zeroed."""
        raw = encode_data(1, 1, b"abc")
        stored = struct.unpack("!H", raw[:2])[0]
        assert stored == internet_checksum(b"\x00\x00" + raw[2:])
        assert verify_checksum(raw)

    def test_eof_packet_is_bare_header(self):
        """An EOF packet is a data header with no payload."""
        raw = encode_data(5, 1, b"")
        assert len(raw) == DATA_HEADER_SIZE


class TestDecode:
    """Test parsing received datagrams."""

    def test_decode_data(self):
        raw = encode_data(seq_num=100, ack_num=20, payload=b"Hello, peer!")
        packet = decode(raw)

        assert isinstance(packet, DataPacket)
        assert packet.seq_num == 100
        assert packet.ack_num == 20
        assert packet.payload == b"Hello, peer!"
        assert packet.payload_length == 12
        assert packet.length == len(raw)
        assert not packet.is_eof

    def test_decode_ack(self):
        packet = decode(encode_ack(9))

        assert isinstance(packet, AckPacket)
        assert packet.ack_num == 9
        assert is_ack(packet)
        assert not is_eof(packet)

    def test_decode_eof(self):
        packet = decode(encode_data(4, 2, b""))

        assert isinstance(packet, DataPacket)
        assert packet.is_eof
        assert is_eof(packet)
        assert not is_ack(packet)

    def test_max_sequence_numbers(self):
        """32-bit fields survive the round trip at their maximum."""
        packet = decode(encode_data(0xFFFFFFFF, 0xFFFFFFFF, b"x"))
        assert packet.seq_num == 0xFFFFFFFF
        assert packet.ack_num == 0xFFFFFFFF

    def test_too_short(self):
        with pytest.raises(CorruptPacketError):
            decode(b"\x00\x01\x02")

    def test_truncated_data_packet(self):
        """A data packet missing payload bytes fails the length check."""
        raw = encode_data(1, 1, b"payload")
        with pytest.raises(CorruptPacketError):
            decode(raw[:-2])

    def test_length_between_headers(self):
        """Datagrams longer than an ack but shorter than a data header are corrupt."""
        with pytest.raises(CorruptPacketError):
            decode(encode_ack(1) + b"\x00\x00")

    def test_declared_length_mismatch(self):
        """Extra trailing bytes do not match the declared length."""
        raw = encode_data(1, 1, b"abc")
        with pytest.raises(CorruptPacketError):
            decode(raw + b"\x00")

    def test_corrupt_error_is_value_error(self):
        assert issubclass(CorruptPacketError, ValueError)


class TestCorruption:
    """Any single flipped bit must be detected."""

    def _flip(self, raw: bytes, bit: int) -> bytes:
        corrupted = bytearray(raw)
        corrupted[bit // 8] ^= 1 << (bit % 8)
        return bytes(corrupted)

    def test_every_bit_of_data_packet(self):
        raw = encode_data(seq_num=77, ack_num=12, payload=b"integrity!")
        for bit in range(len(raw) * 8):
            with pytest.raises(CorruptPacketError):
                decode(self._flip(raw, bit))

    def test_every_bit_of_ack_packet(self):
        raw = encode_ack(1234)
        for bit in range(len(raw) * 8):
            with pytest.raises(CorruptPacketError):
                decode(self._flip(raw, bit))

    def test_every_bit_of_eof_packet(self):
        raw = encode_data(3, 1, b"")
        for bit in range(len(raw) * 8):
            with pytest.raises(CorruptPacketError):
                decode(self._flip(raw, bit))

    def test_odd_length_payload(self):
        """Odd payloads are padded for the checksum, not on the wire."""
        raw = encode_data(1, 1, b"odd")
        assert decode(raw).payload == b"odd"
        with pytest.raises(CorruptPacketError):
            decode(self._flip(raw, len(raw) * 8 - 1))


class TestPluggableChecksum:
    """The checksum primitive can be swapped."""

    def test_custom_checksum(self):
        def xor_checksum(data: bytes) -> int:
            value = 0
            for i in range(0, len(data) - 1, 2):
                value ^= (data[i] << 8) | data[i + 1]
            return value

        raw = encode_data(2, 1, b"custom", checksum=xor_checksum)
        assert decode(raw, checksum=xor_checksum).payload == b"custom"

    def test_mismatched_checksum_rejected(self):
        """A packet built with one checksum fails under another."""
        raw = encode_data(2, 1, b"custom", checksum=lambda data: 0x1234)
        with pytest.raises(CorruptPacketError):
            decode(raw)


class TestValidation:
    """Test construction limits."""

    def test_payload_exceeds_segment_size(self):
        with pytest.raises(ValueError):
            encode_data(1, 1, b"x" * 11, max_segment_size=10)

    def test_payload_at_segment_size(self):
        raw = encode_data(1, 1, b"x" * 10, max_segment_size=10)
        assert decode(raw).payload_length == 10

    def test_invalid_sequence_number(self):
        with pytest.raises(ValueError):
            DataPacket(seq_num=2**32, ack_num=0)
        with pytest.raises(ValueError):
            DataPacket(seq_num=-1, ack_num=0)

    def test_invalid_ack_number(self):
        with pytest.raises(ValueError):
            AckPacket(ack_num=2**32)

    def test_str(self):
        assert "EOF" in str(DataPacket(seq_num=3, ack_num=1))
        assert "DATA" in str(DataPacket(seq_num=3, ack_num=1, payload=b"x"))
        assert "ACK" in str(AckPacket(ack_num=1))


class TestSequenceArithmetic:
    """Sequence comparisons over the 32-bit space."""

    def test_simple_ordering(self):
        assert seq_lt(1, 2)
        assert not seq_lt(2, 1)
        assert not seq_lt(5, 5)
        assert seq_le(5, 5)

    def test_wraparound(self):
        """Numbers just past zero come after numbers just below 2**32."""
        assert seq_add(0xFFFFFFFF, 1) == 0
        assert seq_add(0xFFFFFFFE, 5) == 3
        assert seq_lt(0xFFFFFFFF, 0)
        assert seq_lt(0xFFFFFFF0, 10)
        assert not seq_lt(10, 0xFFFFFFF0)
