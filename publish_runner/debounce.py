"""Change debouncing for the rebuild loop.

Design:
    - **Single pending timestamp**: There is one ``last_modified`` value for the
      whole site, not one per file. Any number of changes inside a quiet period
      coalesce into a single rebuild.
    - **Poll, don't schedule**: The main loop asks :meth:`ChangeDebouncer.is_rebuild_due`
      on its own cadence. No timer threads are involved.
    - **Thread-safe**: Watchdog delivers events on its observer thread while the
      main loop polls on the main thread. Both go through the same lock, and the
      due-check clears the timestamp in the same critical section it reads it.

Key Invariants:
    - ``is_rebuild_due`` returns True at most once per burst.
    - A change recorded after a due-check is never lost: it leaves a fresh
      pending timestamp for the next quiet period.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_QUIET_PERIOD = 3.0


class ChangeDebouncer:
    """Track the most recent change and decide when a rebuild is due.

    Attributes:
        quiet_period (float): Seconds without changes before a rebuild is due.
    """

    __slots__ = ('quiet_period', '_lock', '_last_modified', 'events_recorded', 'rebuilds_due')

    def __init__(self, quiet_period: float = DEFAULT_QUIET_PERIOD) -> None:
        if quiet_period < 0:
            raise ValueError(f"quiet_period must be non-negative, got {quiet_period}")
        self.quiet_period = quiet_period
        self._lock = threading.Lock()
        self._last_modified: Optional[float] = None
        self.events_recorded: int = 0
        self.rebuilds_due: int = 0

    def record_change(self, now: Optional[float] = None) -> bool:
        """Record a qualifying change.

        Args:
            now (Optional[float]): Monotonic timestamp of the change. Defaults to
                ``time.monotonic()``.

        Returns:
            bool: True if no change was pending before this one, i.e. this is
            the first change after a quiet period.
        """
        if now is None:
            now = time.monotonic()
        with self._lock:
            was_idle = self._last_modified is None
            self._last_modified = now
            self.events_recorded += 1
        return was_idle

    def is_rebuild_due(self, now: Optional[float] = None, quiet_period: Optional[float] = None) -> bool:
        """Consume the pending change if its quiet period has elapsed.

        Returns True iff a change is pending and at least ``quiet_period``
        seconds have passed since the last one. On True the pending change is
        cleared, so the caller owns the rebuild.

        Args:
            now (Optional[float]): Monotonic "current" time. Defaults to ``time.monotonic()``.
            quiet_period (Optional[float]): Overrides the configured quiet period.

        Returns:
            bool: Whether a rebuild should run now.
        """
        if now is None:
            now = time.monotonic()
        if quiet_period is None:
            quiet_period = self.quiet_period
        with self._lock:
            if self._last_modified is None:
                return False
            if now - self._last_modified < quiet_period:
                return False
            self._last_modified = None
            self.rebuilds_due += 1
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Rebuild due after {quiet_period}s quiet period")
        return True

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._last_modified is not None

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events_recorded": self.events_recorded,
                "rebuilds_due": self.rebuilds_due,
                "pending": self._last_modified is not None,
            }

    def __repr__(self) -> str:
        return f"<ChangeDebouncer quiet_period={self.quiet_period} pending={self._last_modified is not None}>"
