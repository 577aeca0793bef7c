"""Tests for birrpay.core.pool: bounded slots with fallback."""

import pytest

from birrpay.core.pool import FALLBACK_SLOT_ID, ConnectionPool
from tests.factories import FakeClock


class TestConnectionPool:
    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            ConnectionPool(size=-1)

    def test_acquire_marks_slot_in_use(self):
        pool = ConnectionPool(size=2)
        slot = pool.acquire()
        assert slot.in_use is True
        assert slot.pooled is True
        assert pool.active_count == 1

    def test_excess_acquires_get_fallback_slots(self):
        pool = ConnectionPool(size=3)
        slots = [pool.acquire() for _ in range(5)]
        real = [s for s in slots if s.pooled]
        fallback = [s for s in slots if not s.pooled]
        assert len(real) == 3
        assert len(fallback) == 2
        assert all(s.id == FALLBACK_SLOT_ID for s in fallback)
        assert pool.active_count == 3
        assert pool.fallbacks == 2

    def test_release_frees_slot_for_next_acquire(self):
        pool = ConnectionPool(size=1)
        first = pool.acquire()
        assert pool.acquire().pooled is False
        pool.release(first)
        assert pool.active_count == 0
        assert pool.acquire().pooled is True

    def test_release_fallback_is_noop(self):
        pool = ConnectionPool(size=1)
        pool.acquire()
        fallback = pool.acquire()
        pool.release(fallback)
        assert pool.active_count == 1

    def test_double_release_is_noop(self):
        pool = ConnectionPool(size=2)
        slot = pool.acquire()
        other = pool.acquire()
        pool.release(slot)
        pool.release(slot)
        assert pool.active_count == 1
        pool.release(other)
        assert pool.active_count == 0

    def test_release_stamps_last_used(self):
        clock = FakeClock()
        pool = ConnectionPool(size=1, clock=clock)
        slot = pool.acquire()
        clock.advance(3)
        pool.release(slot)
        assert slot.last_used_at == clock.now

    def test_lease_context_manager(self):
        pool = ConnectionPool(size=1)
        with pool.lease() as slot:
            assert slot.pooled
            assert pool.active_count == 1
        assert pool.active_count == 0

    def test_lease_releases_on_error(self):
        pool = ConnectionPool(size=1)
        with pytest.raises(RuntimeError):
            with pool.lease():
                raise RuntimeError("store down")
        assert pool.active_count == 0

    def test_zero_size_pool_always_falls_back(self):
        pool = ConnectionPool(size=0)
        assert pool.acquire().pooled is False
        assert pool.stats().utilization == 0.0


class TestReclaimStale:
    def test_reclaims_only_long_held_slots(self):
        clock = FakeClock()
        pool = ConnectionPool(size=2, clock=clock)
        pool.acquire()
        clock.advance(100)
        pool.acquire()
        assert pool.reclaim_stale(max_hold_seconds=60) == 1
        assert pool.active_count == 1
        assert pool.reclaimed == 1

    def test_stale_handle_cannot_release_new_lease(self):
        clock = FakeClock()
        pool = ConnectionPool(size=1, clock=clock)
        stale = pool.acquire()
        clock.advance(100)
        pool.reclaim_stale(max_hold_seconds=60)
        fresh = pool.acquire()
        pool.release(stale)
        assert pool.active_count == 1
        pool.release(fresh)
        assert pool.active_count == 0


class TestPoolStats:
    def test_stats(self):
        pool = ConnectionPool(size=4)
        pool.acquire()
        pool.acquire()
        stats = pool.stats()
        assert stats.size == 4
        assert stats.active == 2
        assert stats.available == 2
        assert stats.acquisitions == 2
        assert stats.utilization == 0.5
