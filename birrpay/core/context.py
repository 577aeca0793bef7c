"""The performance layer handed to bot handlers.

One ``PerformanceContext`` is built per process and passed to whatever
needs cached reads or batched writes. ``initialize()`` starts the
background jobs; ``shutdown()`` flushes pending writes before stopping them.
"""

import gc
import inspect
import logging
from collections.abc import Callable
from typing import Any

from birrpay.config import Settings
from birrpay.core.batcher import FailureCallback, WriteBatcher
from birrpay.core.cache import TTLCache
from birrpay.core.monitor import HealthMonitor, process_memory_mb
from birrpay.core.pool import ConnectionPool
from birrpay.core.quota import QuotaTracker
from birrpay.models.enums import WriteType
from birrpay.models.status import HealthSnapshot, PerformanceStats, QuotaStatus
from birrpay.models.writes import FlushResult, PendingWrite
from birrpay.storage.base import Document, DocumentStore

logger = logging.getLogger(__name__)

# Memory sub-score under which the whole cache is dropped during recovery.
MEMORY_CRITICAL_SCORE = 20.0


def cache_key(collection: str, doc_id: str) -> str:
    return f"{collection}/{doc_id}"


class PerformanceContext:
    """Quota-aware read-through cache and write batcher over a document store.

    Args:
        store: Backing document store.
        settings: Tunables for every component.
        on_write_failure: Receives flush results with uncommitted items.
        memory_reader: Returns process memory in MB (for the health score).
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        on_write_failure: FailureCallback | None = None,
        memory_reader: Callable[[], float] = process_memory_mb,
    ) -> None:
        self.store = store
        self.settings = settings
        self.on_write_failure = on_write_failure

        self.cache = TTLCache(
            max_size=settings.cache_max_size,
            default_ttl=settings.cache_ttl_seconds,
        )
        self.quota = QuotaTracker(
            read_limit=settings.quota_read_limit,
            write_limit=settings.quota_write_limit,
            delete_limit=settings.quota_delete_limit,
            reads_per_second=settings.quota_reads_per_second,
            writes_per_second=settings.quota_writes_per_second,
            deletes_per_second=settings.quota_deletes_per_second,
            conservative_pct=settings.quota_conservative_pct,
            emergency_pct=settings.quota_emergency_pct,
            hysteresis_pct=settings.quota_hysteresis_pct,
            window_seconds=settings.quota_window_seconds,
            conservative_ttl_multiplier=settings.conservative_ttl_multiplier,
            emergency_ttl_multiplier=settings.emergency_ttl_multiplier,
        )
        self.pool = ConnectionPool(size=settings.pool_size)
        self.batcher = WriteBatcher(
            store,
            quota=self.quota,
            max_batch_size=settings.batch_max_size,
            flush_interval=settings.batch_flush_interval_seconds,
            item_retry_attempts=settings.batch_item_retry_attempts,
            on_failure=self._handle_flush_failure,
        )
        self.monitor = HealthMonitor(
            self.cache,
            self.batcher,
            self.pool,
            self.quota,
            threshold=settings.health_score_threshold,
            memory_limit_mb=settings.memory_limit_mb,
            check_interval=settings.health_check_interval_seconds,
            memory_reader=memory_reader,
        )
        self._register_recovery_actions()

        self.cached_reads = 0
        self.store_reads = 0
        self.read_errors = 0
        self.queued_writes = 0
        self._initialized = False

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Start the sweep and health-check schedules. Idempotent."""
        if self._initialized:
            return
        if "cache_sweep" not in self.monitor.scheduler.jobs:
            self.monitor.schedule(
                "cache_sweep", self.settings.cache_sweep_interval_seconds, self._sweep_cache
            )
        self.monitor.start()
        self._initialized = True
        logger.info(
            "Performance layer initialized (cache=%d, batch=%d, pool=%d)",
            self.settings.cache_max_size,
            self.settings.batch_max_size,
            self.settings.pool_size,
        )

    async def shutdown(self) -> list[FlushResult]:
        """Flush pending writes, then stop every background job."""
        results = await self.batcher.close(timeout=self.settings.shutdown_timeout_seconds)
        await self.monitor.stop()
        self.cache.clear()
        self._initialized = False
        logger.info("Performance layer shut down (%d batches flushed)", len(results))
        return results

    async def __aenter__(self) -> "PerformanceContext":
        self.initialize()
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        await self.shutdown()

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ── Reads ─────────────────────────────────────────────────────────────

    async def cached_get(self, collection: str, doc_id: str) -> Document | None:
        """Return a document, from cache when fresh, else from the store.

        Cache hits cost no quota. Misses go through a pool slot, are charged
        one read, and are cached with a TTL stretched by the quota mode.
        Store errors propagate to the caller.
        """
        key = cache_key(collection, doc_id)
        cached = self.cache.get(key)
        if cached is not None:
            self.cached_reads += 1
            return dict(cached)  # type: ignore[call-overload]

        if not self.quota.is_read_allowed():
            logger.warning("Read quota exhausted; reading %s anyway", key)

        with self.pool.lease():
            try:
                document = await self.store.get_document(collection, doc_id)
            except Exception:
                self.read_errors += 1
                raise
            finally:
                self.quota.record_read()
        self.store_reads += 1

        if document is None:
            return None
        ttl = self.settings.cache_ttl_seconds * self.quota.ttl_multiplier()
        self.cache.set(key, dict(document), ttl_seconds=ttl)
        return dict(document)

    def invalidate(self, collection: str, doc_id: str) -> bool:
        return self.cache.delete(cache_key(collection, doc_id))

    # ── Writes ────────────────────────────────────────────────────────────

    async def queue_write(
        self,
        collection: str,
        doc_id: str,
        payload: dict[str, Any] | None = None,
        write_type: WriteType | str = WriteType.SET,
    ) -> FlushResult | None:
        """Hand a write to the batcher and keep the cache in step with it.

        Returns a flush result only when this write filled its batch.

        Raises:
            RuntimeError: After ``shutdown()``.
        """
        if self.batcher.closed:
            raise RuntimeError("Performance layer has been shut down")
        write_type = WriteType(write_type)
        payload = dict(payload or {})
        key = cache_key(collection, doc_id)

        if write_type == WriteType.DELETE:
            self.cache.delete(key)
        elif write_type == WriteType.UPDATE:
            existing = self.cache.peek(key)
            if existing is not None:
                self.cache.set(key, {**existing, **payload})  # type: ignore[dict-item]
        else:
            self.cache.set(key, dict(payload))

        self.queued_writes += 1
        item = PendingWrite(doc_id=doc_id, payload=payload, write_type=write_type)
        return await self.batcher.enqueue(collection, write_type, item)

    async def flush_writes(self) -> list[FlushResult]:
        return await self.batcher.flush_all()

    async def _handle_flush_failure(self, result: FlushResult) -> None:
        # The cache was updated optimistically; drop what never reached the store.
        for doc_id in result.failed_ids:
            self.cache.delete(cache_key(result.collection, doc_id))
        if self.on_write_failure is not None:
            maybe = self.on_write_failure(result)
            if inspect.isawaitable(maybe):
                await maybe

    # ── Status ────────────────────────────────────────────────────────────

    def get_health_status(self) -> HealthSnapshot:
        return self.monitor.get_status()

    def get_quota_status(self) -> QuotaStatus:
        return self.quota.status()

    def get_stats(self) -> PerformanceStats:
        return PerformanceStats(
            cached_reads=self.cached_reads,
            store_reads=self.store_reads,
            read_errors=self.read_errors,
            queued_writes=self.queued_writes,
            cache=self.cache.stats(),
            batcher=self.batcher.stats(),
            pool=self.pool.stats(),
            quota=self.quota.status(),
            monitor=self.monitor.get_stats(),
        )

    # ── Background jobs & recovery ────────────────────────────────────────

    def _sweep_cache(self) -> None:
        removed = self.cache.sweep()
        if removed:
            logger.debug("Swept %d expired cache entries", removed)

    def _register_recovery_actions(self) -> None:
        self.monitor.register_recovery("sweep_cache", lambda _snapshot: self._sweep_cache())
        self.monitor.register_recovery("relieve_memory", self._relieve_memory)
        self.monitor.register_recovery("collect_garbage", lambda _snapshot: gc.collect())
        self.monitor.register_recovery(
            "reclaim_pool",
            lambda _snapshot: self.pool.reclaim_stale(self.settings.pool_stale_after_seconds),
        )

    def _relieve_memory(self, snapshot: HealthSnapshot) -> None:
        if snapshot.scores.memory >= MEMORY_CRITICAL_SCORE:
            return
        dropped = self.cache.size
        self.cache.clear()
        logger.warning(
            "Memory at %.0f MB of %.0f MB; cleared %d cache entries",
            snapshot.memory_mb,
            self.settings.memory_limit_mb,
            dropped,
        )
