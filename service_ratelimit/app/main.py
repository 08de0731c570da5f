"""
Rate-limit gateway service.

Sits in front of arbitrary backends as a route service: each request names
its real destination in the ``X-Cf-Forwarded-Url`` header and is admitted,
delayed or rejected per source address before being forwarded.
"""

from functools import partial
from typing import Any, Dict, Optional

import httpx
from fastapi import Request, Response

from shared.base_service import BaseService
from shared.errors import ExternalServiceError

from .adapters.director import FORWARDED_URL_HEADER, build_upstream_request
from .adapters.upstream_client import UpstreamClient, response_headers
from .domain.admission import AdmissionPolicy, client_key
from .domain.live_config import LimiterSettings, LiveConfigController
from .ratelimit import RateLimiter

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class RateLimitService(BaseService):
    """Admission-controlled reverse proxy."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, **config_overrides):
        super().__init__("ratelimit", **config_overrides)

        settings = LimiterSettings.from_config(self.config)
        self.controller = LiveConfigController(
            settings,
            limiter_factory=partial(RateLimiter, metrics=self.metrics),
            metrics=self.metrics,
        )
        self.upstream = UpstreamClient(
            verify_tls=not self.config.skip_ssl_validation,
            timeout=self.config.upstream_timeout,
            transport=transport,
            metrics=self.metrics,
        )
        self.admission = AdmissionPolicy(self.controller, self.upstream, metrics=self.metrics)

        self.logger.info(
            "Admission settings loaded",
            limit_per_sec=settings.limit,
            delay_ms=settings.delay_ms,
            duration_ms=settings.window_ms,
            percentage=settings.percentage,
            skip_ssl_validation=self.config.skip_ssl_validation,
        )

        @self.app.on_event("startup")
        async def _startup():
            await self.controller.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.controller.stop()
            await self.upstream.close()

        self._setup_ratelimit_routes()
        self._setup_proxy_routes()

        self.app.state.ratelimit_service = self

    async def _check_dependencies(self) -> Dict[str, Any]:
        store = self.controller.limiter.store
        return {"eviction_sweep": "ok" if getattr(store, "running", False) else "stopped"}

    async def _claim_common_route(self, request: Request) -> Optional[Response]:
        # a request naming a destination belongs upstream, whatever its path
        if FORWARDED_URL_HEADER in request.headers:
            return await self._proxy(request)
        return None

    def _setup_ratelimit_routes(self):
        """Observability and live reconfiguration endpoints."""

        @self.app.get("/stats")
        async def stats():
            """Remaining capacity per tracked client."""
            return [stat.to_dict() for stat in self.controller.limiter.get_stats()]

        @self.app.get("/config")
        async def on_the_fly_config(request: Request):
            """Change DELAY, LIMIT, DURATION or PERCENT without a restart."""
            settings = await self.controller.apply(dict(request.query_params))
            return settings.to_dict()

    def _setup_proxy_routes(self):
        """Brokered and simple proxy routes. Registered last: the simple route matches every path."""

        @self.app.api_route(
            "/service-instance/{service_instance_id}/bind-instance/{bind_instance_id}",
            methods=PROXY_METHODS,
            include_in_schema=False,
        )
        @self.app.api_route(
            "/service-instance/{service_instance_id}/bind-instance/{bind_instance_id}/{rest:path}",
            methods=PROXY_METHODS,
            include_in_schema=False,
        )
        async def brokered_proxy(request: Request, service_instance_id: str, bind_instance_id: str):
            """Route used when bound as a brokered service."""
            return await self._proxy(
                request,
                brokered={"service_instance_id": service_instance_id, "bind_instance_id": bind_instance_id},
            )

        @self.app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
        async def simple_proxy(request: Request, path: str):
            """Route used when bound as a user-provided service."""
            return await self._proxy(request)

    async def _proxy(self, request: Request, brokered: Optional[Dict[str, str]] = None) -> Response:
        body = await request.body()
        upstream_request = build_upstream_request(
            request.method,
            request.headers.items(),
            body,
            brokered=brokered,
        )

        try:
            upstream_response = await self.admission.round_trip(upstream_request, client_key(request.client))
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                service="upstream",
                message=str(exc) or exc.__class__.__name__,
                details={"url": str(upstream_request.url)},
            ) from exc

        response = Response(content=upstream_response.content, status_code=upstream_response.status_code)
        for name, value in response_headers(upstream_response):
            response.headers.append(name, value)
        return response


def create_app(**kwargs):
    """Create FastAPI application."""
    service = RateLimitService(**kwargs)
    return service.app


def main() -> None:
    RateLimitService().run()


if __name__ == "__main__":
    main()
