"""
Per-client state store for admission control.

Holds one token bucket per client key, creates buckets lazily and evicts
idle ones from a background sweep task.
"""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from shared.logging import get_logger

from .token_bucket import TokenBucket

EXPIRE_AFTER_SECONDS = 30.0
SWEEP_INTERVAL_SECONDS = 0.5


def fill_interval_seconds(limit: int, window_ms: int = 0) -> float:
    """Refill cadence for a bucket of ``limit`` tokens.

    An explicit window wins; otherwise tokens refill at ``limit`` per second,
    rounded down to whole milliseconds with a 1 ms floor.
    """
    if window_ms > 0:
        return window_ms / 1000.0
    return max(1, 1000 // limit) / 1000.0


class Store(ABC):
    """Capability interface used by the rate limiter."""

    @abstractmethod
    def increment(self, key: str) -> Tuple[int, bool]:
        """Consume one token for ``key``; returns ``(remaining, ok)``."""

    @abstractmethod
    def available(self, key: str) -> int:
        """Tokens available for ``key`` without consuming; 0 if unknown."""

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Point-in-time copy of key -> available tokens."""

    async def start(self) -> None:
        """Start background maintenance, if any."""

    async def stop(self) -> None:
        """Stop background maintenance, if any."""


@dataclass
class Entry:
    """A single client's bucket plus last-touch time."""
    bucket: TokenBucket
    updated_at: float

    def expired(self, now: float, ttl: float) -> bool:
        return now > self.updated_at + ttl


class InMemoryStore(Store):
    """Process-local store guarded by one lock."""

    def __init__(
        self,
        limit: int,
        window_ms: int = 0,
        ttl: float = EXPIRE_AFTER_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: Any = None,
    ):
        if limit <= 0:
            raise ValueError(f"store limit must be positive, got {limit}")

        self.limit = limit
        self.window_ms = window_ms
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.fill_interval = fill_interval_seconds(limit, window_ms)
        self._clock = clock
        self.metrics = metrics
        self._storage: Dict[str, Entry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self.logger = get_logger("ratelimit.store")

    def _new_entry(self, now: float) -> Entry:
        return Entry(
            bucket=TokenBucket(self.fill_interval, self.limit, clock=self._clock),
            updated_at=now,
        )

    def increment(self, key: str) -> Tuple[int, bool]:
        with self._lock:
            now = self._clock()
            entry = self._storage.get(key)
            if entry is None:
                entry = self._new_entry(now)
                self._storage[key] = entry

            entry.updated_at = now
            if entry.bucket.take_available(1) == 0:
                return 0, False
            return entry.bucket.available(), True

    def available(self, key: str) -> int:
        with self._lock:
            entry = self._storage.get(key)
            if entry is None:
                return 0
            return entry.bucket.available()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {key: entry.bucket.available() for key, entry in self._storage.items()}

    def evict_expired(self) -> int:
        """Drop entries idle for longer than the TTL. Returns count evicted.

        Also refreshes the ``tracked_clients`` gauge, so each sweep tick
        publishes the current key count.
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._storage.items() if entry.expired(now, self.ttl)]
            for key in expired:
                del self._storage[key]
            tracked = len(self._storage)

        if self.metrics is not None:
            self.metrics.set_gauge("tracked_clients", tracked)

        for key in expired:
            self.logger.info("Removing expired key", key=key)
        return len(expired)

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the periodic eviction sweep."""
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._expiry_loop())
        self.logger.debug("Eviction sweep started", interval=self.sweep_interval, ttl=self.ttl)

    async def stop(self) -> None:
        """Stop the eviction sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
        self.logger.debug("Eviction sweep stopped")

    async def _expiry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.evict_expired()
