from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600.0


class HourlyBudget:
    """Fixed-window AI call budget with a minimum spacing between calls.

    Process-local: two workers each holding one of these get twice the
    budget. Pass a different object with the same ``try_acquire`` method to
    share a budget across processes.
    """

    def __init__(
        self,
        hourly_budget: int,
        min_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.hourly_budget = max(0, int(hourly_budget))
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._window_start = clock()
        self._used = 0
        self._last_call: float | None = None

    @property
    def used(self) -> int:
        return self._used

    def remaining(self) -> int:
        with self._lock:
            self._roll_window(self._clock())
            return max(0, self.hourly_budget - self._used)

    def try_acquire(self) -> bool:
        """Reserve one call. Waits out the spacing; returns False when the hour is spent."""
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            if self._used >= self.hourly_budget:
                logger.info(
                    "AI budget exhausted (%d/%d this hour)", self._used, self.hourly_budget
                )
                return False

            if self._last_call is not None and self.min_interval_seconds:
                wait = self._last_call + self.min_interval_seconds - now
                if wait > 0:
                    self._sleep(wait)
                    now = self._clock()

            self._used += 1
            self._last_call = now
            return True

    def _roll_window(self, now: float) -> None:
        if now - self._window_start >= WINDOW_SECONDS:
            self._window_start = now
            self._used = 0
