"""
Send Window - fixed-capacity ring of unacknowledged data packets.

Every data packet the session emits (EOF included) takes one slot until the
peer cumulatively acknowledges it. The window keeps the exact wire bytes so
a retransmission resends the packet unchanged.

Visualization (capacity 6, occupancy 4, after wraparound):

    slot:    0     1     2     3     4     5
          [ s9 | s10 |  -  |  -  |  s7 |  s8 ]
                       ^            ^
                     writer       reader

Reader and writer are equal both when the ring is empty and when it is full,
so occupancy is tracked explicitly.

Invariants:
- occupancy <= capacity
- sequence numbers strictly increase from reader to writer
- entries leave only from the reader side, and only once acknowledged
"""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .packet import DATA_HEADER_SIZE, seq_lt


logger = logging.getLogger(__name__)


@dataclass
class WindowEntry:
    """An outstanding data packet: its sequence number and wire bytes."""
    seq_num: int
    raw: bytes
    retransmit_count: int = 0

    @property
    def is_eof(self) -> bool:
        return len(self.raw) == DATA_HEADER_SIZE

    def __len__(self) -> int:
        return len(self.raw)


class SendWindow:
    """
    Circular buffer of outstanding packets, ordered by sequence number.

    The window owns each entry from push() until pop_oldest(); popping clears
    the slot so the entry is released exactly once.
    """

    def __init__(self, capacity: int):
        """
        Initialize the window.

        Args:
            capacity: Maximum number of outstanding packets (>= 1)
        """
        if capacity < 1:
            raise ValueError(f"Window capacity must be at least 1, got {capacity}")

        self._capacity = capacity
        self._slots: List[Optional[WindowEntry]] = [None] * capacity
        self._reader = 0
        self._writer = 0
        self._occupancy = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def occupancy(self) -> int:
        """Number of packets currently held."""
        return self._occupancy

    def free_slots(self) -> int:
        """Slots available for new packets."""
        return self._capacity - self._occupancy

    def is_empty(self) -> bool:
        return self._occupancy == 0

    def is_full(self) -> bool:
        return self._occupancy == self._capacity

    def push(self, entry: WindowEntry) -> bool:
        """
        Append a packet at the writer position.

        Returns False if the window is full. The caller keeps the data and
        tries again once an acknowledgment frees a slot.

        Raises:
            ValueError: If entry does not come after the newest held packet
        """
        if self.is_full():
            return False

        newest = self.peek_newest()
        if newest is not None and not seq_lt(newest.seq_num, entry.seq_num):
            raise ValueError(
                f"Out of order push: seq {entry.seq_num} after {newest.seq_num}"
            )

        self._slots[self._writer] = entry
        self._writer = (self._writer + 1) % self._capacity
        self._occupancy += 1
        return True

    def peek_oldest(self) -> Optional[WindowEntry]:
        """The packet at the reader position, without removing it."""
        if self.is_empty():
            return None
        return self._slots[self._reader]

    def peek_newest(self) -> Optional[WindowEntry]:
        """The most recently pushed packet still held."""
        if self.is_empty():
            return None
        return self._slots[(self._writer - 1) % self._capacity]

    def pop_oldest(self) -> bool:
        """
        Remove the packet at the reader position.

        Returns False if the window is empty.
        """
        if self.is_empty():
            return False

        self._slots[self._reader] = None
        self._reader = (self._reader + 1) % self._capacity
        self._occupancy -= 1
        return True

    def acknowledge(self, ack_num: int) -> List[WindowEntry]:
        """
        Process a cumulative acknowledgment.

        Pops every packet whose sequence number is strictly below ack_num,
        oldest first, stopping at the first one that is not covered.

        Returns:
            The packets that were acknowledged (empty for a duplicate ack)
        """
        acked = []
        while not self.is_empty():
            oldest = self.peek_oldest()
            if not seq_lt(oldest.seq_num, ack_num):
                break
            acked.append(oldest)
            self.pop_oldest()

        if acked:
            logger.debug(f"Window acked {len(acked)} packet(s) below {ack_num}, "
                         f"occupancy={self._occupancy}")
        return acked

    def __iter__(self) -> Iterator[WindowEntry]:
        """Iterate held packets oldest to newest (logical order, not slot order)."""
        for i in range(self._occupancy):
            yield self._slots[(self._reader + i) % self._capacity]

    def __len__(self) -> int:
        return self._occupancy

    def __str__(self) -> str:
        seqs = [entry.seq_num for entry in self]
        return f"SendWindow({self._occupancy}/{self._capacity}, seqs={seqs})"
