"""
expiry.py
=========
Deferred cleanup of registrations that were started but never finished.

Each pending registration gets one timer. When it fires, the action re-reads
the record by username under the per-username lock and removes it only if it
is still the same pending record, so completions and newer registrations of
the same username are left alone.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Tuple

logger = logging.getLogger(__name__)

ExpiryAction = Callable[[str, str], bool]


class ExpiryScheduler:
    """Arms one daemon threading.Timer per (username, record id)."""

    def __init__(self, window: float, action: ExpiryAction) -> None:
        if window <= 0:
            raise ValueError("expiry window must be positive")
        self.window = window
        self._action = action
        self._timers: Dict[Tuple[str, str], threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, username: str, record_id: str) -> None:
        timer = threading.Timer(self.window, self._fire, args=(username, record_id))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop((username, record_id), None)
            self._timers[(username, record_id)] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        logger.debug("Expiry for %r armed in %.1fs", username, self.window)

    def _fire(self, username: str, record_id: str) -> None:
        with self._lock:
            self._timers.pop((username, record_id), None)
        try:
            self._action(username, record_id)
        except Exception:
            # Nothing upstream can catch errors raised on a timer thread.
            logger.exception("Expiry check for %r failed", username)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
