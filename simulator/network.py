#!/usr/bin/env python3
"""
Network Simulator for protocol testing

This module provides an in-memory lossy link between two session endpoints.
It allows you to:

1. Connect two sessions without real sockets
2. Simulate packet loss, duplication, reordering and corruption
3. Drop or corrupt specific packets on demand
4. Run whole transfers deterministically (seeded randomness, explicit pumping)

Nothing is delivered until pump() is called, so a test controls exactly
when datagrams arrive and when the clock ticks.
"""

import random
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from reliable.packet import CorruptPacketError, decode
from reliable.streams import Channel, ChannelError

logger = logging.getLogger(__name__)


@dataclass
class NetworkStats:
    """Statistics about network behavior."""
    packets_sent: int = 0
    packets_delivered: int = 0
    packets_dropped: int = 0
    packets_corrupted: int = 0
    packets_reordered: int = 0
    packets_duplicated: int = 0
    bytes_sent: int = 0
    bytes_delivered: int = 0

    def __str__(self) -> str:
        loss_rate = self.packets_dropped / max(1, self.packets_sent) * 100
        return (
            f"Network Stats:\n"
            f"  Packets sent: {self.packets_sent}\n"
            f"  Packets delivered: {self.packets_delivered}\n"
            f"  Packets dropped: {self.packets_dropped} ({loss_rate:.1f}%)\n"
            f"  Packets corrupted: {self.packets_corrupted}\n"
            f"  Packets reordered: {self.packets_reordered}\n"
            f"  Packets duplicated: {self.packets_duplicated}\n"
            f"  Bytes sent: {self.bytes_sent}\n"
            f"  Bytes delivered: {self.bytes_delivered}"
        )


class PacketCapture:
    """
    Record the datagrams crossing a link.

    Useful for debugging protocol behavior and asserting on what was sent.
    """

    def __init__(self):
        self._packets: List[dict] = []

    def capture(self, packet: bytes, src: str, dst: str, fate: str = "sent"):
        """Capture a packet."""
        self._packets.append({
            'index': len(self._packets),
            'src': src,
            'dst': dst,
            'fate': fate,
            'size': len(packet),
            'raw': packet
        })

    def get_packets(self, src: Optional[str] = None) -> List[dict]:
        """Get captured packets, optionally only those sent by src."""
        return [p for p in self._packets if src is None or p['src'] == src]

    def clear(self):
        self._packets.clear()

    def summary(self) -> str:
        """Generate a summary of captured packets."""
        if not self._packets:
            return "No packets captured"

        lines = [f"Captured {len(self._packets)} packets:"]
        for pkt in self._packets[:50]:
            try:
                desc = str(decode(pkt['raw']))
            except CorruptPacketError:
                desc = "CORRUPT"
            lines.append(
                f"  {pkt['index']:4d} {pkt['src']} -> {pkt['dst']} "
                f"[{pkt['fate']}] {desc} ({pkt['size']} bytes)"
            )

        if len(self._packets) > 50:
            lines.append(f"  ... and {len(self._packets) - 50} more")

        return '\n'.join(lines)


class SimulatedChannel(Channel):
    """One end of a LossyLink, usable wherever a Channel is expected."""

    def __init__(self, link: "LossyLink", name: str):
        self._link = link
        self.name = name
        self._inbox: Deque[bytes] = deque()
        self.closed = False

    def send(self, data: bytes):
        if self.closed:
            raise ChannelError(f"Channel {self.name} is closed")
        self._link.transmit(self.name, bytes(data))

    def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Pop a datagram delivered by pump() to an end with no receiver attached."""
        if self.closed:
            raise ChannelError(f"Channel {self.name} is closed")
        if self._inbox:
            return self._inbox.popleft()
        return None

    def close(self):
        self.closed = True


class LossyLink:
    """
    A bidirectional link between ends "a" and "b".

    Characteristics (probabilities per datagram):
    - loss_rate: datagram vanishes
    - duplicate_rate: datagram is delivered twice
    - corrupt_rate: one random bit is flipped
    - reorder_rate: datagram jumps ahead of others already queued
    """

    MAX_PUMP = 100000

    def __init__(self, loss_rate: float = 0.0, duplicate_rate: float = 0.0,
                 corrupt_rate: float = 0.0, reorder_rate: float = 0.0,
                 seed: Optional[int] = None):
        self.loss_rate = loss_rate
        self.duplicate_rate = duplicate_rate
        self.corrupt_rate = corrupt_rate
        self.reorder_rate = reorder_rate
        self._random = random.Random(seed)

        self.a = SimulatedChannel(self, "a")
        self.b = SimulatedChannel(self, "b")
        self._ends = {"a": self.a, "b": self.b}

        # Datagrams waiting for delivery, keyed by destination
        self._queues: Dict[str, Deque[bytes]] = {"a": deque(), "b": deque()}
        self._receivers: Dict[str, Callable[[bytes], None]] = {}

        # One-shot impairments, keyed by destination
        self._drop_next: Dict[str, int] = {"a": 0, "b": 0}
        self._corrupt_next: Dict[str, int] = {"a": 0, "b": 0}

        self._stats = NetworkStats()
        self.capture = PacketCapture()

    @staticmethod
    def _peer(name: str) -> str:
        return "b" if name == "a" else "a"

    def attach(self, name: str, receiver: Callable[[bytes], None]):
        """
        Deliver datagrams arriving at end `name` to receiver.

        Typically receiver is a session's on_packet_received.
        """
        self._receivers[name] = receiver

    def drop_next(self, count: int = 1, to: str = "b"):
        """Drop the next `count` datagrams headed to end `to`."""
        self._drop_next[to] += count

    def corrupt_next(self, count: int = 1, to: str = "b"):
        """Flip one bit in each of the next `count` datagrams headed to `to`."""
        self._corrupt_next[to] += count

    def transmit(self, src: str, packet: bytes):
        """
        Send a packet through the simulated link.

        The packet may be dropped, corrupted, duplicated or reordered based
        on the link characteristics.
        """
        dst = self._peer(src)
        self._stats.packets_sent += 1
        self._stats.bytes_sent += len(packet)

        if self._drop_next[dst] > 0:
            self._drop_next[dst] -= 1
            self._drop(packet, src, dst)
            return
        if self._random.random() < self.loss_rate:
            self._drop(packet, src, dst)
            return

        if self._corrupt_next[dst] > 0:
            self._corrupt_next[dst] -= 1
            packet = self._flip_bit(packet)
        elif self._random.random() < self.corrupt_rate:
            packet = self._flip_bit(packet)

        self.capture.capture(packet, src, dst)
        queue = self._queues[dst]

        if queue and self._random.random() < self.reorder_rate:
            self._stats.packets_reordered += 1
            queue.insert(self._random.randrange(len(queue)), packet)
        else:
            queue.append(packet)

        if self._random.random() < self.duplicate_rate:
            self._stats.packets_duplicated += 1
            queue.append(packet)

    def _drop(self, packet: bytes, src: str, dst: str):
        self._stats.packets_dropped += 1
        self.capture.capture(packet, src, dst, fate="dropped")
        logger.debug(f"Dropped: {src} -> {dst} ({len(packet)} bytes)")

    def _flip_bit(self, packet: bytes) -> bytes:
        self._stats.packets_corrupted += 1
        corrupted = bytearray(packet)
        bit = self._random.randrange(len(corrupted) * 8)
        corrupted[bit // 8] ^= 1 << (bit % 8)
        return bytes(corrupted)

    def pending(self, to: Optional[str] = None) -> int:
        """Number of datagrams waiting for delivery."""
        if to is not None:
            return len(self._queues[to])
        return sum(len(q) for q in self._queues.values())

    def pump(self, max_packets: Optional[int] = None) -> int:
        """
        Deliver queued datagrams until none are left.

        Deliveries alternate between the two ends. Receivers may send while
        being called; those datagrams are delivered in the same pump.

        Returns:
            Number of datagrams delivered
        """
        limit = self.MAX_PUMP if max_packets is None else max_packets
        delivered = 0

        while delivered < limit and self.pending():
            for dst in ("a", "b"):
                queue = self._queues[dst]
                if not queue or delivered >= limit:
                    continue
                packet = queue.popleft()
                delivered += 1
                self._deliver(dst, packet)

        return delivered

    def _deliver(self, dst: str, packet: bytes):
        """Deliver a packet to its destination."""
        self._stats.packets_delivered += 1
        self._stats.bytes_delivered += len(packet)

        receiver = self._receivers.get(dst)
        if receiver:
            receiver(packet)
        else:
            self._ends[dst]._inbox.append(packet)

    def run(self, registry, max_ticks: int = 1000) -> bool:
        """
        Alternate delivery and clock ticks until every session closes.

        Args:
            registry: SessionRegistry holding the sessions on this link
            max_ticks: Give up after this many ticks

        Returns:
            True if all sessions finished
        """
        for _ in range(max_ticks):
            self.pump()
            if len(registry) == 0:
                return True
            registry.tick()

        self.pump()
        return len(registry) == 0

    def get_stats(self) -> NetworkStats:
        """Get network statistics."""
        return self._stats

    def reset_stats(self):
        """Reset network statistics."""
        self._stats = NetworkStats()
