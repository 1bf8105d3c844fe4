"""
Session Registry - the collection of live sessions.

The registry owns every live session, keyed by an id it assigns. A single
global clock calls tick(), which delivers one timer tick to each session.

Sessions can be destroyed in the middle of a sweep (a tick may finish the
last retransmission or the linger period). tick() therefore iterates over a
snapshot taken under the lock and never mutates the map while walking it;
destroyed sessions remove themselves through their close callback.
"""

import itertools
import logging
import threading
from typing import Dict, Iterator, List, Optional

from .session import Session
from .streams import ChannelError
from .timer import PeriodicTicker


logger = logging.getLogger(__name__)


class SessionRegistry:
    """Map of session id to live Session."""

    def __init__(self):
        self._sessions: Dict[int, Session] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._ticker: Optional[PeriodicTicker] = None

    def add(self, session: Session) -> int:
        """
        Register a session and return its id.

        The session is removed automatically when it is destroyed.
        """
        with self._lock:
            session_id = next(self._ids)
            session.session_id = session_id
            self._sessions[session_id] = session

        logger.debug(f"Registered session {session_id}")
        session.add_close_callback(lambda s: self.remove(s.session_id))
        return session_id

    def remove(self, session_id: int) -> bool:
        """
        Remove a session by id.

        Returns False if it was not registered (already removed).
        """
        with self._lock:
            removed = self._sessions.pop(session_id, None)

        if removed is None:
            return False
        logger.debug(f"Removed session {session_id}")
        return True

    def get(self, session_id: int) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def sessions(self) -> List[Session]:
        """Snapshot of the live sessions."""
        with self._lock:
            return list(self._sessions.values())

    def tick(self):
        """
        Deliver one timer tick to every live session.

        A channel failure in one session destroys that session only; the
        sweep continues with the rest.
        """
        for session in self.sessions():
            if session.is_closed:
                continue
            try:
                session.on_timer_tick()
            except ChannelError as e:
                logger.error(f"Session {session.session_id} failed during tick: {e}")

    def start_ticker(self, interval: Optional[float] = None) -> PeriodicTicker:
        """
        Drive tick() from a background clock.

        Args:
            interval: Seconds between ticks. Defaults to the smallest tick_ms
                among the registered sessions, or 100ms.
        """
        if interval is None:
            tick_ms = [s.config.tick_ms for s in self.sessions()]
            interval = min(tick_ms, default=100) / 1000.0

        with self._lock:
            if self._ticker is None:
                self._ticker = PeriodicTicker(interval, self.tick)
            ticker = self._ticker
        ticker.start()
        return ticker

    def stop_ticker(self):
        with self._lock:
            ticker = self._ticker
            self._ticker = None
        if ticker is not None:
            ticker.stop()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: int) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(self.sessions())

    def __str__(self) -> str:
        return f"SessionRegistry({len(self)} sessions)"
