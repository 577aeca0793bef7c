"""Simulated connection pool bounding concurrent logical store operations."""

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace

from birrpay.models.status import PoolStats

logger = logging.getLogger(__name__)

FALLBACK_SLOT_ID = "direct"


@dataclass
class PoolSlot:
    id: int | str
    in_use: bool = False
    last_used_at: float = 0.0
    acquired_at: float | None = None
    pooled: bool = True
    lease: int = 0


class ConnectionPool:
    """Fixed set of reusable slots.

    ``acquire`` never waits: when every slot is taken the caller gets an
    unpooled fallback slot and proceeds without accounting.

    Args:
        size: Number of real slots, fixed for the life of the pool.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, size: int = 10, clock: Callable[[], float] = time.monotonic) -> None:
        if size < 0:
            raise ValueError("Pool size must be non-negative")
        self._clock = clock
        now = clock()
        self._slots = [PoolSlot(id=i, last_used_at=now) for i in range(size)]
        self._active = 0
        self.acquisitions = 0
        self.fallbacks = 0
        self.reclaimed = 0
        self._leases = 0

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def active_count(self) -> int:
        return self._active

    def acquire(self) -> PoolSlot:
        """Take a free slot, or a fallback slot when the pool is exhausted.

        The returned object is a handle for this lease; the pool keeps its
        own record so a reclaimed lease cannot release someone else's slot.
        """
        self.acquisitions += 1
        for slot in self._slots:
            if not slot.in_use:
                now = self._clock()
                self._leases += 1
                slot.in_use = True
                slot.acquired_at = now
                slot.last_used_at = now
                slot.lease = self._leases
                self._active += 1
                return replace(slot)

        self.fallbacks += 1
        return PoolSlot(id=FALLBACK_SLOT_ID, in_use=True, pooled=False)

    def release(self, slot: PoolSlot) -> None:
        if not slot.pooled:
            return
        record = self._slots[slot.id]  # type: ignore[index]
        if not record.in_use or record.lease != slot.lease:
            return
        now = self._clock()
        record.in_use = False
        record.acquired_at = None
        record.last_used_at = now
        slot.in_use = False
        slot.last_used_at = now
        self._active -= 1

    @contextmanager
    def lease(self) -> Iterator[PoolSlot]:
        """Acquire a slot for the duration of the block."""
        slot = self.acquire()
        try:
            yield slot
        finally:
            self.release(slot)

    def reclaim_stale(self, max_hold_seconds: float) -> int:
        """Free slots held longer than *max_hold_seconds*. Returns the count."""
        now = self._clock()
        freed = 0
        for slot in self._slots:
            if slot.in_use and slot.acquired_at is not None:
                if now - slot.acquired_at > max_hold_seconds:
                    slot.in_use = False
                    slot.acquired_at = None
                    slot.last_used_at = now
                    self._active -= 1
                    freed += 1
        if freed:
            self.reclaimed += freed
            logger.warning("Reclaimed %d pool slots held over %.0fs", freed, max_hold_seconds)
        return freed

    def stats(self) -> PoolStats:
        return PoolStats(
            size=self.size,
            active=self._active,
            available=self.size - self._active,
            acquisitions=self.acquisitions,
            fallbacks=self.fallbacks,
            reclaimed=self.reclaimed,
        )
