"""
Rate limiter policy for the gateway.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from shared.logging import get_logger

from .store import InMemoryStore, Store


@dataclass
class Stat:
    """Remaining capacity for one tracked client."""
    ip: str
    available: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateLimiter:
    """Per-client admission decisions backed by a state store.

    A limiter is bound to one capacity and refill window. Changing either
    means building a new limiter, which starts every client from a full
    bucket.
    """

    def __init__(self, limit: int, window_ms: int = 0, store: Optional[Store] = None, metrics: Any = None):
        self.limit = limit
        self.window_ms = window_ms
        self.store = store if store is not None else InMemoryStore(limit, window_ms, metrics=metrics)
        self.logger = get_logger("ratelimit.limiter")

    async def start(self) -> None:
        await self.store.start()

    async def stop(self) -> None:
        await self.store.stop()

    def exceeds_limit(self, ip: str) -> bool:
        """Consume a token for ``ip``; True when none was available."""
        _, ok = self.store.increment(ip)
        if not ok:
            self.logger.warning("Rate limit exceeded", ip=ip, limit=self.limit)
            return True
        return False

    def above_percentage(self, ip: str, limit: int, percentage: int) -> bool:
        """Whether ``ip`` still holds at least ``percentage`` percent of ``limit``.

        Reads availability only; no token is consumed. A non-positive limit
        cannot produce a percentage and is reported as above the threshold.
        """
        if limit <= 0:
            self.logger.warning("Percentage check skipped, limit is not positive", ip=ip, limit=limit)
            return True

        total_available = self.store.available(ip)
        available_percent = total_available / limit * 100
        self.logger.debug(
            "Percentage check",
            ip=ip,
            available=total_available,
            limit=limit,
            available_percent=available_percent,
            threshold=percentage,
        )
        if available_percent >= percentage:
            return True

        self.logger.info("Below percentage threshold", ip=ip, available_percent=available_percent, threshold=percentage)
        return False

    def get_stats(self) -> List[Stat]:
        return [Stat(ip=key, available=value) for key, value in self.store.stats().items()]
