"""
Unit tests for the admission pipeline.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from service_ratelimit.app.adapters.upstream_client import UpstreamClient
from service_ratelimit.app.domain.admission import (
    BELOW_PERCENTAGE,
    TOO_MANY_REQUESTS,
    AdmissionPolicy,
    client_key,
)
from service_ratelimit.app.domain.live_config import LimiterSettings, LiveConfigController
from service_ratelimit.app.ratelimit import InMemoryStore, RateLimiter
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, RecordingUpstream


def frozen_controller(**settings) -> LiveConfigController:
    """Controller whose stores never refill during a test."""
    clock = FakeClock()

    def factory(limit: int, window_ms: int) -> RateLimiter:
        return RateLimiter(limit, window_ms, store=InMemoryStore(limit, window_ms, clock=clock))

    return LiveConfigController(LimiterSettings(**settings), limiter_factory=factory)


def upstream_request() -> httpx.Request:
    return httpx.Request("GET", "https://backend.example.com/api/items")


class TestClientKey:
    """Client key extraction."""

    def test_uses_host(self):
        assert client_key(SimpleNamespace(host="10.0.0.1", port=51234)) == "10.0.0.1"

    def test_missing_client(self):
        assert client_key(None) == "unknown"
        assert client_key(SimpleNamespace(host="", port=0)) == "unknown"


class TestAdmissionPolicy:
    """Test cases for AdmissionPolicy."""

    @pytest.fixture
    def upstream(self):
        return RecordingUpstream()

    @pytest.fixture
    def transport(self, upstream):
        return UpstreamClient(transport=upstream.transport)

    @pytest.mark.asyncio
    async def test_limit_scenario_across_two_clients(self, upstream, transport):
        policy = AdmissionPolicy(frozen_controller(limit=3), transport)

        statuses = []
        for ip in ["10.0.0.1", "10.0.0.1", "10.0.0.2", "10.0.0.1", "10.0.0.1"]:
            response = await policy.round_trip(upstream_request(), ip)
            statuses.append(response.status_code)

        assert statuses == [200, 200, 200, 200, 429]
        assert response.text == TOO_MANY_REQUESTS
        assert response.headers["content-type"].startswith("text/plain")
        assert len(upstream.requests) == 4
        await transport.close()

    @pytest.mark.asyncio
    async def test_percentage_gate_rejects_with_tokens_left(self, upstream, transport):
        controller = frozen_controller(limit=10, percentage=50)
        policy = AdmissionPolicy(controller, transport)
        for _ in range(6):
            controller.limiter.exceeds_limit("10.0.0.1")

        response = await policy.round_trip(upstream_request(), "10.0.0.1")

        assert response.status_code == 429
        assert response.text == BELOW_PERCENTAGE
        assert upstream.requests == []
        # hard gate consumed one token, the soft gate none
        assert controller.limiter.store.available("10.0.0.1") == 3
        await transport.close()

    @pytest.mark.asyncio
    async def test_percentage_gate_disabled_at_zero(self, upstream, transport):
        controller = frozen_controller(limit=10, percentage=0)
        policy = AdmissionPolicy(controller, transport)
        for _ in range(8):
            controller.limiter.exceeds_limit("10.0.0.1")

        response = await policy.round_trip(upstream_request(), "10.0.0.1")

        assert response.status_code == 200
        await transport.close()

    @pytest.mark.asyncio
    async def test_upstream_response_returned_verbatim(self):
        upstream = RecordingUpstream(status_code=503, extra_headers={"X-Backend": "b1"})
        client = UpstreamClient(transport=upstream.transport)
        policy = AdmissionPolicy(frozen_controller(limit=3), client)

        response = await policy.round_trip(upstream_request(), "10.0.0.1")

        assert response.status_code == 503
        assert response.headers["x-backend"] == "b1"
        assert response.json()["url"] == "https://backend.example.com/api/items"
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self):
        upstream = RecordingUpstream(error=httpx.ConnectError("connection refused"))
        client = UpstreamClient(transport=upstream.transport)
        policy = AdmissionPolicy(frozen_controller(limit=3), client)

        with pytest.raises(httpx.ConnectError):
            await policy.round_trip(upstream_request(), "10.0.0.1")
        await client.close()

    @pytest.mark.asyncio
    async def test_delay_applies_to_rejected_requests(self, transport):
        policy = AdmissionPolicy(frozen_controller(limit=1, delay_ms=30), transport)

        with patch("service_ratelimit.app.domain.admission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            first = await policy.round_trip(upstream_request(), "10.0.0.1")
            second = await policy.round_trip(upstream_request(), "10.0.0.1")

        assert first.status_code == 200
        assert second.status_code == 429
        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(0.03)
        await transport.close()

    @pytest.mark.asyncio
    async def test_no_sleep_without_delay(self, transport):
        policy = AdmissionPolicy(frozen_controller(limit=1), transport)

        with patch("service_ratelimit.app.domain.admission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await policy.round_trip(upstream_request(), "10.0.0.1")

        mock_sleep.assert_not_awaited()
        await transport.close()

    @pytest.mark.asyncio
    async def test_delay_holds_only_its_own_request(self, upstream, transport):
        """A sleeping request does not hold up others handled on the same loop."""
        controller = frozen_controller(limit=3, delay_ms=200)
        policy = AdmissionPolicy(controller, transport)

        delayed = asyncio.create_task(policy.round_trip(upstream_request(), "10.0.0.1"))
        await asyncio.sleep(0)
        await controller.apply({"DELAY": "0"})

        loop = asyncio.get_running_loop()
        started = loop.time()
        response = await policy.round_trip(upstream_request(), "10.0.0.2")
        elapsed = loop.time() - started

        assert response.status_code == 200
        assert elapsed < 0.2
        assert not delayed.done()
        assert len(upstream.requests) == 1

        assert (await delayed).status_code == 200
        assert len(upstream.requests) == 2
        await transport.close()

    @pytest.mark.asyncio
    async def test_in_flight_request_keeps_its_snapshot(self, transport):
        """A reconfiguration during the delay does not touch the waiting request."""
        controller = frozen_controller(limit=3, delay_ms=50)
        policy = AdmissionPolicy(controller, transport)
        original = controller.limiter

        pending = asyncio.create_task(policy.round_trip(upstream_request(), "10.0.0.1"))
        await asyncio.sleep(0)
        await controller.apply({"LIMIT": "1"})
        response = await pending

        assert response.status_code == 200
        assert original.store.available("10.0.0.1") == 2
        assert controller.limiter.limit == 1
        assert controller.limiter.get_stats() == []
        await controller.stop()
        await transport.close()

    @pytest.mark.asyncio
    async def test_records_decisions(self, transport):
        metrics = MetricsCollector("ratelimit")
        policy = AdmissionPolicy(frozen_controller(limit=1), transport, metrics=metrics)

        await policy.round_trip(upstream_request(), "10.0.0.1")
        await policy.round_trip(upstream_request(), "10.0.0.1")

        registry = metrics.registry
        assert registry.get_sample_value("admission_decisions_total", {"decision": "admitted"}) == 1.0
        assert registry.get_sample_value("admission_decisions_total", {"decision": "rejected_limit"}) == 1.0
        await transport.close()
