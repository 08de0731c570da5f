"""
Unit tests for the in-memory state store.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from service_ratelimit.app.ratelimit.store import (
    EXPIRE_AFTER_SECONDS,
    InMemoryStore,
    Store,
    fill_interval_seconds,
)
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock


class TestFillInterval:
    """Refill cadence derivation."""

    def test_derived_from_limit(self):
        assert fill_interval_seconds(10) == pytest.approx(0.1)
        assert fill_interval_seconds(4) == pytest.approx(0.25)

    def test_has_one_millisecond_floor(self):
        assert fill_interval_seconds(5000) == pytest.approx(0.001)

    def test_explicit_window_wins(self):
        assert fill_interval_seconds(10, 500) == pytest.approx(0.5)


class TestInMemoryStore:
    """Test cases for InMemoryStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return InMemoryStore(4, clock=clock)

    def test_is_a_store(self, store):
        assert isinstance(store, Store)

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            InMemoryStore(0)

    def test_first_n_increments_succeed_then_fail(self, store):
        assert store.increment("10.0.0.1") == (3, True)
        assert store.increment("10.0.0.1") == (2, True)
        assert store.increment("10.0.0.1") == (1, True)
        assert store.increment("10.0.0.1") == (0, True)
        assert store.increment("10.0.0.1") == (0, False)

    def test_available_unknown_key_is_zero(self, store):
        assert store.available("10.9.9.9") == 0
        assert store.stats() == {}

    def test_available_does_not_consume(self, store):
        store.increment("10.0.0.1")
        assert store.available("10.0.0.1") == 3
        assert store.available("10.0.0.1") == 3

    def test_keys_are_isolated(self, store):
        for _ in range(5):
            store.increment("10.0.0.1")
        assert store.available("10.0.0.1") == 0
        assert store.increment("10.0.0.2") == (3, True)

    def test_refill_after_interval(self, store, clock):
        for _ in range(4):
            store.increment("10.0.0.1")
        assert store.increment("10.0.0.1") == (0, False)

        clock.advance(0.25)
        assert store.increment("10.0.0.1") == (0, True)

    def test_available_stays_within_capacity(self, store, clock):
        store.increment("10.0.0.1")
        clock.advance(EXPIRE_AFTER_SECONDS / 2)
        assert 0 <= store.available("10.0.0.1") <= 4
        assert store.available("10.0.0.1") == 4

    def test_explicit_window_controls_refill(self, clock):
        store = InMemoryStore(2, window_ms=1000, clock=clock)
        store.increment("k")
        store.increment("k")
        clock.advance(0.5)
        assert store.increment("k") == (0, False)
        clock.advance(0.5)
        assert store.increment("k") == (0, True)

    def test_stats_is_a_copy(self, store):
        store.increment("10.0.0.1")
        snapshot = store.stats()
        snapshot["10.0.0.1"] = 99
        snapshot["other"] = 1
        assert store.stats() == {"10.0.0.1": 3}

    def test_evicts_idle_keys_and_keeps_fresh_ones(self, store, clock):
        store.increment("idle")
        clock.advance(20)
        store.increment("fresh")
        clock.advance(11)

        assert store.evict_expired() == 1
        assert list(store.stats()) == ["fresh"]

    def test_eviction_updates_tracked_clients_gauge(self, clock):
        metrics = MetricsCollector("ratelimit")
        store = InMemoryStore(3, clock=clock, metrics=metrics)
        store.increment("idle")
        clock.advance(20)
        store.increment("fresh")
        store.increment("other")

        store.evict_expired()
        assert metrics.registry.get_sample_value("tracked_clients") == 3.0

        clock.advance(11)
        store.evict_expired()
        assert metrics.registry.get_sample_value("tracked_clients") == 2.0

    def test_rejected_attempt_keeps_key_alive(self, clock):
        store = InMemoryStore(1, window_ms=60000, clock=clock)
        store.increment("k")
        clock.advance(25)
        assert store.increment("k") == (0, False)
        clock.advance(25)
        assert store.evict_expired() == 0
        assert "k" in store.stats()

    def test_evicted_key_restarts_full(self, store, clock):
        for _ in range(4):
            store.increment("k")
        clock.advance(EXPIRE_AFTER_SECONDS + 1)
        store.evict_expired()
        assert store.available("k") == 0
        assert store.increment("k") == (3, True)

    def test_concurrent_increments_never_overdraw(self):
        """Exactly ``limit`` increments succeed regardless of thread interleaving."""
        store = InMemoryStore(50, window_ms=600000)

        def hit(_):
            return store.increment("10.0.0.1")[1]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(hit, range(400)))

        assert results.count(True) == 50
        assert store.available("10.0.0.1") == 0


class TestEvictionSweep:
    """Background sweep lifecycle."""

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_entries(self):
        clock = FakeClock()
        store = InMemoryStore(3, sweep_interval=0.01, clock=clock)
        store.increment("idle")
        clock.advance(EXPIRE_AFTER_SECONDS + 1)

        await store.start()
        try:
            assert store.running
            for _ in range(50):
                if not store.stats():
                    break
                await asyncio.sleep(0.01)
            assert store.stats() == {}
        finally:
            await store.stop()

        assert not store.running

    @pytest.mark.asyncio
    async def test_sweep_refreshes_gauge_without_stats_calls(self):
        metrics = MetricsCollector("ratelimit")
        store = InMemoryStore(3, sweep_interval=0.01, metrics=metrics)
        store.increment("10.0.0.1")

        await store.start()
        try:
            for _ in range(50):
                if metrics.registry.get_sample_value("tracked_clients") == 1.0:
                    break
                await asyncio.sleep(0.01)
            assert metrics.registry.get_sample_value("tracked_clients") == 1.0
        finally:
            await store.stop()

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self):
        store = InMemoryStore(3, sweep_interval=0.01)
        await store.start()
        task = store._sweep_task
        await store.start()
        assert store._sweep_task is task
        await store.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        store = InMemoryStore(3)
        await store.stop()
        assert not store.running
