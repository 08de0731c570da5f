"""
Upstream transport for admitted requests.
"""

from contextlib import nullcontext
from typing import Any, Optional

import httpx

from shared.logging import get_logger

from .director import HOP_BY_HOP_HEADERS

# httpx hands back a decoded body, so length and encoding no longer apply
_STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


class UpstreamClient:
    """Sends requests to their resolved destination over one shared client."""

    def __init__(
        self,
        verify_tls: bool = False,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Any = None,
    ):
        self.logger = get_logger("ratelimit.upstream_client")
        self.metrics = metrics
        self._client = httpx.AsyncClient(
            verify=verify_tls,
            timeout=timeout,
            transport=transport,
            follow_redirects=False,
        )

    async def send(self, request: httpx.Request) -> httpx.Response:
        """Round-trip ``request`` upstream. Transport errors propagate."""
        timer = (
            self.metrics.time_operation("upstream_request_duration_seconds", method=request.method)
            if self.metrics is not None
            else nullcontext()
        )
        try:
            with timer:
                response = await self._client.send(request)
        except httpx.HTTPError as exc:
            self.logger.error("Upstream request failed", url=str(request.url), method=request.method, error=str(exc))
            raise

        self.logger.debug("Upstream response", url=str(request.url), status_code=response.status_code)
        return response

    async def close(self) -> None:
        await self._client.aclose()


def response_headers(response: httpx.Response) -> list:
    """Headers of an upstream response that remain valid once relayed."""
    return [
        (name, value)
        for name, value in response.headers.multi_items()
        if name.lower() not in _STRIPPED_RESPONSE_HEADERS
    ]
