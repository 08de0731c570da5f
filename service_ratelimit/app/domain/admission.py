"""
Admission pipeline applied to every proxied request.

Order per request: artificial delay, hard token gate, optional percentage
gate, then the upstream round trip. The delay comes first so rejected
callers pay the same latency as admitted ones.
"""

import asyncio
from typing import Any, Optional

import httpx

from shared.logging import get_logger

from .live_config import LiveConfigController

TOO_MANY_REQUESTS = "Too many requests"
BELOW_PERCENTAGE = "Requests below than percentage"


def client_key(client: Optional[Any]) -> str:
    """Key admission state by the caller's address (no port)."""
    if client is None or not getattr(client, "host", None):
        return "unknown"
    return client.host


def _rejection(body: str) -> httpx.Response:
    return httpx.Response(
        429,
        content=body.encode("utf-8"),
        headers={"Content-Type": "text/plain; charset=utf-8"},
    )


class AdmissionPolicy:
    """Decides whether a request is forwarded upstream or rejected."""

    def __init__(self, controller: LiveConfigController, transport: Any, metrics: Any = None):
        self.controller = controller
        self.transport = transport
        self.metrics = metrics
        self.logger = get_logger("ratelimit.admission")

    def _record(self, decision: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("admission_decisions_total", decision=decision)

    async def round_trip(self, request: httpx.Request, key: str) -> httpx.Response:
        state = self.controller.current()
        settings = state.settings
        limiter = state.limiter

        self.logger.info("Request received", ip=key, delay_ms=settings.delay_ms)
        if settings.delay_ms > 0:
            await asyncio.sleep(settings.delay_ms / 1000.0)

        if limiter.exceeds_limit(key):
            self._record("rejected_limit")
            return _rejection(TOO_MANY_REQUESTS)

        if settings.percentage > 0 and not limiter.above_percentage(key, settings.limit, settings.percentage):
            self._record("rejected_percentage")
            return _rejection(BELOW_PERCENTAGE)

        self._record("admitted")
        return await self.transport.send(request)
