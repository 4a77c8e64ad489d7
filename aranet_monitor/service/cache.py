"""
Latest-reading cache shared between the poll scheduler and its readers.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..ble.protocol import Reading


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable view of the cache at one instant."""
    reading: Optional[Reading] = None
    error: Optional[Exception] = None
    last_success: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    consecutive_failures: int = 0
    total_failures: int = 0

    @property
    def has_reading(self) -> bool:
        return self.reading is not None

    @property
    def is_healthy(self) -> bool:
        """True when a reading exists and the latest attempt succeeded."""
        return self.reading is not None and self.error is None

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.last_success is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - self.last_success).total_seconds()


class ReadingCache:
    """
    Holds the most recent Reading together with the last error.

    Every update builds a new CacheSnapshot and swaps the reference, so
    readers on other threads (the metrics HTTP server) see either the old or
    the new snapshot, never a mix. Only writers take the lock.
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger("aranet.cache")
        self._snapshot = CacheSnapshot()
        self._write_lock = threading.Lock()
        self._callbacks: List[Callable[[Reading], None]] = []

    def get_latest(self) -> CacheSnapshot:
        """Return the current snapshot without blocking."""
        return self._snapshot

    def record_success(self, reading: Reading, when: Optional[datetime] = None):
        """Replace the cached reading and clear the error."""
        when = when or datetime.now(timezone.utc)
        with self._write_lock:
            self._snapshot = replace(
                self._snapshot,
                reading=reading,
                error=None,
                last_success=when,
                last_attempt=when,
                consecutive_failures=0,
            )
        self._notify_callbacks(reading)

    def record_failure(self, error: Exception, when: Optional[datetime] = None):
        """Record a failed attempt; the previous reading is kept."""
        when = when or datetime.now(timezone.utc)
        with self._write_lock:
            previous = self._snapshot
            self._snapshot = replace(
                previous,
                error=error,
                last_attempt=when,
                consecutive_failures=previous.consecutive_failures + 1,
                total_failures=previous.total_failures + 1,
            )

    def add_callback(self, callback: Callable[[Reading], None]):
        """
        Add callback for new readings.

        Args:
            callback: Function to call with each successfully decoded Reading
        """
        self._callbacks.append(callback)
        self.logger.debug(f"Added callback: {callback.__name__}")

    def remove_callback(self, callback: Callable[[Reading], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)
            self.logger.debug(f"Removed callback: {callback.__name__}")

    def _notify_callbacks(self, reading: Reading):
        for callback in list(self._callbacks):
            try:
                callback(reading)
            except Exception as e:
                self.logger.error(f"Error in callback {callback.__name__}: {e}")
