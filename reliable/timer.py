"""
Retransmission Timer - tick-driven timeouts and the resend watermark.

One global clock ticks at a fixed interval. Each tick is delivered to every
live session, and each session counts down its own timeout in ticks. When
the countdown expires, the session resends everything in its window that
was already outstanding at the previous expiry.

Why the watermark lags by one sweep: a packet sent a moment before the
countdown expires has had no time for a round trip. Only packets that were
outstanding at the previous sweep are old enough to be presumed lost.

    sweep k-1            sweep k              sweep k+1
       |--- p1 sent ---p2 sent---|------------------|
       watermark=None        resend nothing      resend p1, p2
                             watermark=p2

There is no backoff and no retry limit: retransmission continues until the
packets are acknowledged or the session is torn down.
"""

import logging
import threading
from typing import Callable, Optional

from .packet import seq_le


logger = logging.getLogger(__name__)


class RetransmissionTimer:
    """
    Per-session countdown with the resend watermark.

    Not thread safe on its own: the owning session calls it under its lock.
    """

    def __init__(self, interval_ticks: int):
        """
        Args:
            interval_ticks: Ticks between resend sweeps (>= 1)
        """
        if interval_ticks < 1:
            raise ValueError(f"Timer interval must be at least 1 tick, got {interval_ticks}")

        self._interval = interval_ticks
        self._remaining = interval_ticks
        self._watermark: Optional[int] = None
        self._sweep_count = 0

    @property
    def interval(self) -> int:
        return self._interval

    @property
    def remaining(self) -> int:
        """Ticks left until the next sweep."""
        return self._remaining

    @property
    def watermark(self) -> Optional[int]:
        """Newest sequence number outstanding at the previous sweep."""
        return self._watermark

    @property
    def sweep_count(self) -> int:
        return self._sweep_count

    def tick(self) -> bool:
        """
        Count down one tick.

        Returns True when the countdown expires. The countdown is reset
        immediately so the next sweep is a full interval away.
        """
        self._remaining -= 1
        if self._remaining > 0:
            return False

        self.reset()
        self._sweep_count += 1
        return True

    def reset(self):
        """Restart the countdown from a full interval."""
        self._remaining = self._interval

    def eligible(self, seq_num: int) -> bool:
        """Check whether a packet is old enough to be resent in this sweep."""
        return self._watermark is not None and seq_le(seq_num, self._watermark)

    def record_sweep(self, newest_seq: Optional[int]):
        """Remember the newest outstanding sequence number after a sweep."""
        self._watermark = newest_seq

    def __str__(self) -> str:
        return (f"RetransmissionTimer(remaining={self._remaining}/{self._interval}, "
                f"watermark={self._watermark})")


class PeriodicTicker:
    """
    Background thread calling a function at a fixed interval.

    This is the global clock: one ticker drives the registry, which delivers
    the tick to every session. Exceptions raised by the callback are logged
    and the ticker keeps running.
    """

    def __init__(self, interval: float, callback: Callable[[], None]):
        """
        Args:
            interval: Seconds between ticks
            callback: Function invoked on every tick
        """
        if interval <= 0:
            raise ValueError(f"Tick interval must be positive, got {interval}")

        self._interval = interval
        self._callback = callback
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._ticks = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def ticks(self) -> int:
        """Number of ticks delivered so far."""
        return self._ticks

    def start(self):
        """Start ticking. Calling start() on a running ticker does nothing."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._tick_loop, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 1.0):
        """Stop ticking and wait for the thread to exit."""
        with self._lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def _tick_loop(self):
        """Wait one interval, tick, repeat until stopped."""
        while not self._stop_event.wait(timeout=self._interval):
            self._ticks += 1
            try:
                self._callback()
            except Exception as e:
                logger.error(f"Error in timer tick: {e}")
