"""
Live configuration for the admission pipeline.

Settings and the limiter they describe are published together as one
immutable ``GatewayState``. Requests read the current state once; updates
build a new state and replace the reference in a single assignment.
"""

import asyncio
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional

from shared.logging import get_logger

from ..ratelimit import RateLimiter

DEFAULT_LIMIT = 10

_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class LimiterSettings:
    """Admission parameters shared by every request."""
    limit: int = DEFAULT_LIMIT
    delay_ms: int = 0
    window_ms: int = 0
    percentage: int = 0

    @classmethod
    def from_config(cls, config: Any) -> "LimiterSettings":
        """Build startup settings from the service configuration."""
        logger = get_logger("ratelimit.live_config")

        limit = abs(config.rate_limit)
        if limit == 0:
            logger.warning("Rate limit must be positive, using default", value=config.rate_limit, default=DEFAULT_LIMIT)
            limit = DEFAULT_LIMIT

        # -1 is the historical "derive from limit" marker
        window_ms = config.duration if config.duration > 0 else 0

        percentage = config.percentage
        if not 0 <= percentage <= 100:
            logger.warning("Percentage must be within 0-100, disabling", value=percentage)
            percentage = 0

        return cls(limit=limit, delay_ms=abs(config.delay), window_ms=window_ms, percentage=percentage)

    def to_dict(self) -> Dict[str, int]:
        return {
            "limit": self.limit,
            "delay": self.delay_ms,
            "duration": self.window_ms,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class GatewayState:
    """Settings paired with the limiter built for them."""
    settings: LimiterSettings
    limiter: RateLimiter


def _parse_int(raw: Optional[str]) -> Optional[int]:
    """Plain ASCII decimal with an optional sign; no underscores or other digit sets."""
    if raw is None or not _INTEGER.fullmatch(raw.strip()):
        return None
    return int(raw)


class LiveConfigController:
    """Single entry point for runtime changes to admission settings."""

    def __init__(
        self,
        settings: LimiterSettings,
        limiter_factory: Callable[[int, int], RateLimiter] = RateLimiter,
        metrics: Any = None,
    ):
        self._limiter_factory = limiter_factory
        self.metrics = metrics
        self.logger = get_logger("ratelimit.live_config")
        # held across limiter start/stop awaits, so updates never interleave
        self._update_lock = asyncio.Lock()
        self._state = GatewayState(
            settings=settings,
            limiter=limiter_factory(settings.limit, settings.window_ms),
        )

    def current(self) -> GatewayState:
        return self._state

    @property
    def settings(self) -> LimiterSettings:
        return self._state.settings

    @property
    def limiter(self) -> RateLimiter:
        return self._state.limiter

    async def start(self) -> None:
        await self._state.limiter.start()

    async def stop(self) -> None:
        await self._state.limiter.stop()

    async def apply(self, overrides: Mapping[str, str]) -> LimiterSettings:
        """Apply ``DELAY``, ``LIMIT``, ``DURATION`` and ``PERCENT``/``PERCENTAGE``.

        A value that does not parse, or falls outside its range, leaves that
        parameter as it was. A valid ``LIMIT`` or ``DURATION`` rebuilds the
        limiter, discarding every client's bucket.
        """
        async with self._update_lock:
            previous = self._state
            settings = previous.settings
            changes: Dict[str, int] = {}

            raw_delay = overrides.get("DELAY")
            if raw_delay:
                delay = _parse_int(raw_delay)
                if delay is None:
                    self.logger.warning("Invalid delay value, keeping previous", value=raw_delay, delay=settings.delay_ms)
                else:
                    changes["delay_ms"] = abs(delay)
                    self.logger.info("Setting delay", delay_ms=abs(delay))

            raw_limit = overrides.get("LIMIT")
            if raw_limit:
                limit = _parse_int(raw_limit)
                if limit is None or limit == 0:
                    self.logger.warning("Invalid limit value, keeping previous", value=raw_limit, limit=settings.limit)
                else:
                    changes["limit"] = abs(limit)
                    self.logger.info("Setting rate limit", limit=abs(limit))

            raw_duration = overrides.get("DURATION")
            if raw_duration:
                duration = _parse_int(raw_duration)
                if duration is None:
                    self.logger.warning("Invalid duration value, keeping previous", value=raw_duration, duration=settings.window_ms)
                else:
                    changes["window_ms"] = abs(duration)
                    self.logger.info("Setting refill window", window_ms=abs(duration))

            raw_percentage = overrides.get("PERCENT") or overrides.get("PERCENTAGE")
            if raw_percentage:
                percentage = _parse_int(raw_percentage)
                if percentage is None or not 0 <= percentage <= 100:
                    self.logger.warning(
                        "Invalid percentage value, keeping previous",
                        value=raw_percentage,
                        percentage=settings.percentage,
                    )
                else:
                    changes["percentage"] = percentage
                    self.logger.info("Setting percentage threshold", percentage=percentage)

            if not changes:
                return settings

            new_settings = replace(settings, **changes)
            limiter = previous.limiter
            rebuild = "limit" in changes or "window_ms" in changes
            if rebuild:
                limiter = self._limiter_factory(new_settings.limit, new_settings.window_ms)
                await limiter.start()

            self._state = GatewayState(settings=new_settings, limiter=limiter)

            if rebuild:
                await previous.limiter.stop()
                self.logger.info("Rate limiter rebuilt", limit=new_settings.limit, window_ms=new_settings.window_ms)

            if self.metrics is not None:
                for parameter in changes:
                    self.metrics.increment_counter("reconfigurations_total", parameter=parameter)

            return new_settings
