"""Fixed-window request budget shared by all calls to one provider."""

from __future__ import annotations

import threading
import time
from typing import Callable


class RateLimit:
    """Allow ``capacity`` requests per ``period`` seconds.

    The window resets once ``period`` has elapsed since it opened; callers
    that find the budget exhausted block in acquire() until then.
    """

    def __init__(
        self,
        capacity: int,
        period: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if capacity < 1 or period <= 0:
            raise ValueError("rate limit needs capacity >= 1 and period > 0")
        self.capacity = capacity
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._used = 0
        self._reset_at = clock() + period

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            if now >= self._reset_at:
                self._used = 0
                self._reset_at = now + self.period
            if self._used < self.capacity:
                self._used += 1
                return True
            return False

    def wait_time(self) -> float:
        with self._lock:
            return max(0.0, self._reset_at - self._clock())

    def acquire(self) -> None:
        while not self.try_acquire():
            self._sleep(self.wait_time())
