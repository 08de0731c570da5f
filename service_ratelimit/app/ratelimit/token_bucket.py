"""
Token bucket primitive for the admission-control store.
"""

import time
from typing import Callable


class TokenBucket:
    """Integer token bucket with quantum refill.

    The bucket starts full. Time since creation is divided into whole
    ``fill_interval`` ticks; every tick that elapses restores one token,
    never beyond ``capacity``. Partial intervals do not count, so a request
    can only be admitted again once a full interval has passed.
    """

    def __init__(
        self,
        fill_interval: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if fill_interval <= 0:
            raise ValueError("token bucket fill interval must be positive")
        if capacity <= 0:
            raise ValueError("token bucket capacity must be positive")

        self.fill_interval = fill_interval
        self.capacity = capacity
        self._clock = clock
        self._start_time = clock()
        self._latest_tick = 0
        self._available = capacity

    def _current_tick(self, now: float) -> int:
        return int((now - self._start_time) // self.fill_interval)

    def _adjust(self, now: float) -> None:
        tick = self._current_tick(now)
        last_tick = self._latest_tick
        self._latest_tick = tick
        if self._available >= self.capacity:
            return
        self._available = min(self.capacity, self._available + (tick - last_tick))

    def available(self) -> int:
        """Tokens that could be taken right now."""
        self._adjust(self._clock())
        return self._available

    def take_available(self, count: int = 1) -> int:
        """Take up to ``count`` tokens; returns how many were removed."""
        if count <= 0:
            return 0
        self._adjust(self._clock())
        taken = min(count, self._available)
        self._available -= taken
        return taken
