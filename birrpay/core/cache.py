"""In-memory TTL cache with insertion-order eviction and metrics."""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from birrpay.models.status import CacheStats


class CacheMetrics:
    """Tracks cumulative cache statistics."""

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.deletes = 0
        self.evictions = 0
        self.expirations = 0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.lookups
        if total == 0:
            return 0.0
        return self.hits / total


@dataclass(slots=True)
class CacheEntry:
    value: object
    inserted_at: float
    ttl_seconds: float

    def is_stale(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl_seconds


class TTLCache:
    """TTL-based cache that evicts the oldest-inserted entry at capacity.

    Reads do not reorder entries, so eviction stays O(1) with no access
    bookkeeping. Overwriting a key refreshes its timestamp and moves it to
    the newest position.

    Args:
        max_size: Maximum number of entries before eviction.
        default_ttl: TTL in seconds used when ``set`` is given none.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_size: int = 10_000,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: OrderedDict[str, CacheEntry] = OrderedDict()
        self.metrics = CacheMetrics()

    def get(self, key: str) -> object | None:
        """Retrieve a value if present and within its TTL.

        Stale entries are removed as a side effect and count as misses.
        """
        entry = self._store.get(key)
        if entry is None:
            self.metrics.misses += 1
            return None

        if entry.is_stale(self._clock()):
            del self._store[key]
            self.metrics.expirations += 1
            self.metrics.misses += 1
            return None

        self.metrics.hits += 1
        return entry.value

    def peek(self, key: str) -> object | None:
        """Like ``get`` but without touching metrics or evicting."""
        entry = self._store.get(key)
        if entry is None or entry.is_stale(self._clock()):
            return None
        return entry.value

    def set(self, key: str, value: object, ttl_seconds: float | None = None) -> None:
        """Store a value, evicting the oldest entry if at capacity."""
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(value=value, inserted_at=self._clock(), ttl_seconds=ttl)
        self.metrics.sets += 1

        if key in self._store:
            self._store.move_to_end(key)
            self._store[key] = entry
            return

        if len(self._store) >= self.max_size:
            self._store.popitem(last=False)
            self.metrics.evictions += 1

        self._store[key] = entry

    def delete(self, key: str) -> bool:
        """Remove a specific key. Returns True if the key existed."""
        if key in self._store:
            del self._store[key]
            self.metrics.deletes += 1
            return True
        return False

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, entry in self._store.items() if entry.is_stale(now)]
        for key in expired:
            del self._store[key]
        self.metrics.expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        """Remove all entries."""
        self._store.clear()

    def __contains__(self, key: str) -> bool:
        entry = self._store.get(key)
        return entry is not None and not entry.is_stale(self._clock())

    @property
    def size(self) -> int:
        """Current number of entries, including not-yet-swept stale ones."""
        return len(self._store)

    def stats(self) -> CacheStats:
        m = self.metrics
        return CacheStats(
            size=self.size,
            max_size=self.max_size,
            hits=m.hits,
            misses=m.misses,
            sets=m.sets,
            deletes=m.deletes,
            evictions=m.evictions,
            expirations=m.expirations,
            hit_rate=m.hit_rate,
        )
