"""Write batching keyed by (collection, operation).

Writes accumulate per key and are committed with one ``bulk_write`` call
when the batch fills up or its flush timer fires, whichever happens first.
"""

import asyncio
import inspect
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from birrpay.core.quota import QuotaTracker
from birrpay.core.resilience import (
    PermanentStoreError,
    TransientStoreError,
    retry_transient,
)
from birrpay.models.enums import WriteType
from birrpay.models.status import BatcherStats
from birrpay.models.writes import FlushResult, PendingWrite
from birrpay.storage.base import DocumentStore

logger = logging.getLogger(__name__)

BatchKey = tuple[str, WriteType]
FailureCallback = Callable[[FlushResult], Awaitable[None] | None]


@dataclass
class PendingBatch:
    items: list[PendingWrite] = field(default_factory=list)
    opened_at: float = 0.0
    timer: asyncio.TimerHandle | None = None


class WriteBatcher:
    """Groups pending writes and flushes them on size or time.

    A batch is detached from the pending map before its flush awaits
    anything, so writes arriving during a flush open a fresh batch. Flushes
    of the same key run one at a time, in order; different keys flush
    concurrently.

    Args:
        store: Backing document store.
        quota: Tracker charged one write per ``bulk_write`` call.
        max_batch_size: Items that trigger an immediate flush.
        flush_interval: Seconds after the first item before a timed flush.
        item_retry_attempts: Individual attempts for items that failed in bulk.
        on_failure: Called with any ``FlushResult`` that has failed items.
    """

    def __init__(
        self,
        store: DocumentStore,
        quota: QuotaTracker | None = None,
        max_batch_size: int = 500,
        flush_interval: float = 1.0,
        item_retry_attempts: int = 1,
        on_failure: FailureCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.store = store
        self.quota = quota
        self.max_batch_size = max_batch_size
        self.flush_interval = flush_interval
        self.item_retry_attempts = item_retry_attempts
        self.on_failure = on_failure
        self._clock = clock

        self._pending: dict[BatchKey, PendingBatch] = {}
        self._locks: dict[BatchKey, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

        self._in_flight = 0
        self.flushes = 0
        self.items_committed = 0
        self.items_failed = 0
        self.items_retried = 0
        self.items_abandoned = 0
        self._abandoned: list[FlushResult] = []

    # ── Enqueue ───────────────────────────────────────────────────────────

    async def enqueue(
        self, collection: str, operation: WriteType | str, item: PendingWrite
    ) -> FlushResult | None:
        """Add *item* to the batch for ``(collection, operation)``.

        Returns the flush result when this item filled the batch, else None.

        Raises:
            RuntimeError: If the batcher has been closed.
        """
        if self._closed:
            raise RuntimeError("WriteBatcher is closed")
        key: BatchKey = (collection, WriteType(operation))
        batch = self._pending.get(key)
        if batch is None:
            batch = PendingBatch(opened_at=self._clock())
            batch.timer = asyncio.get_running_loop().call_later(
                self.flush_interval, self._on_timer, key, batch
            )
            self._pending[key] = batch
        batch.items.append(item)

        if len(batch.items) >= self.max_batch_size:
            return await self.flush(key)
        return None

    def _on_timer(self, key: BatchKey, batch: PendingBatch) -> None:
        # A timer that outlived its batch must not flush the next one.
        if self._pending.get(key) is not batch:
            return
        self._spawn(self.flush(key), name=f"flush:{key[0]}:{key[1]}")

    def _spawn(self, coro: Awaitable[object], name: str) -> None:
        task = asyncio.create_task(self._guarded(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, coro: Awaitable[object], name: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Background task %s failed", name)

    # ── Flush ─────────────────────────────────────────────────────────────

    def _detach(self, key: BatchKey) -> list[PendingWrite]:
        batch = self._pending.pop(key, None)
        if batch is None:
            return []
        if batch.timer is not None:
            batch.timer.cancel()
        return batch.items

    async def flush(self, key: BatchKey) -> FlushResult:
        """Commit whatever is pending for *key*.

        With nothing pending this waits for any in-flight flush of the key
        and returns an empty result. If the flush is cancelled, every item
        not yet committed is reported as failed before the cancellation
        propagates.
        """
        collection, operation = key
        items = self._detach(key)
        result = FlushResult(collection=collection, operation=operation)
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                if not items:
                    return result
                self._in_flight += 1
                try:
                    await self._commit(result, items)
                finally:
                    self._in_flight -= 1
        except asyncio.CancelledError:
            if items:
                await self._abandon(result, items)
            raise

        self.flushes += 1
        self.items_committed += len(result.committed)
        self.items_failed += len(result.failed)
        self.items_retried += result.retried
        if result.failed:
            logger.warning(
                "Flush of %s/%s left %d of %d items uncommitted: %s",
                collection,
                operation,
                len(result.failed),
                len(items),
                result.failed_ids,
            )
            await self._notify_failure(result)
        else:
            logger.debug("Flushed %d items to %s/%s", len(items), collection, operation)
        return result

    async def _abandon(self, result: FlushResult, items: list[PendingWrite]) -> None:
        """Mark every item of an interrupted flush that did not settle as failed."""
        settled = Counter(result.committed) + Counter(result.failed_ids)
        lost = 0
        for item in items:
            if settled[item.doc_id]:
                settled[item.doc_id] -= 1
            else:
                result.failed.append(item)
                lost += 1
        self.items_committed += len(result.committed)
        self.items_failed += len(result.failed)
        self.items_abandoned += lost
        self._abandoned.append(result)
        logger.error(
            "Flush of %s/%s interrupted; %d of %d items not committed: %s",
            result.collection,
            result.operation,
            len(result.failed),
            len(items),
            result.failed_ids,
        )
        if result.failed:
            await self._notify_failure(result)

    async def flush_all(self) -> list[FlushResult]:
        """Flush every pending batch concurrently."""
        keys = list(self._pending)
        if not keys:
            return []
        return list(await asyncio.gather(*(self.flush(key) for key in keys)))

    async def _commit(self, result: FlushResult, items: list[PendingWrite]) -> None:
        collection, operation = result.collection, result.operation
        try:
            outcomes = await self.store.bulk_write(collection, operation, list(items))
        except Exception as exc:
            logger.warning(
                "Bulk write of %d items to %s/%s failed: %s", len(items), collection, operation, exc
            )
            to_retry = list(items)
        else:
            to_retry = []
            for index, item in enumerate(items):
                outcome = outcomes[index] if index < len(outcomes) else None
                if outcome is not None and outcome.ok:
                    result.committed.append(item.doc_id)
                else:
                    to_retry.append(item)
        finally:
            self._charge(operation)

        for item in to_retry:
            result.retried += 1
            try:
                await retry_transient(
                    lambda item=item: self._write_one(collection, operation, item),
                    attempts=self.item_retry_attempts,
                )
            except Exception as exc:
                logger.debug("Item %s/%s failed individually: %s", collection, item.doc_id, exc)
                result.failed.append(item)
            else:
                result.committed.append(item.doc_id)

    async def _write_one(self, collection: str, operation: WriteType, item: PendingWrite) -> None:
        try:
            outcomes = await self.store.bulk_write(collection, operation, [item])
        finally:
            self._charge(operation)
        if outcomes and outcomes[0].ok:
            return
        error = outcomes[0].error if outcomes else "no outcome reported"
        if outcomes and not outcomes[0].retriable:
            raise PermanentStoreError(error)
        raise TransientStoreError(error)

    def _charge(self, operation: WriteType) -> None:
        if self.quota is None:
            return
        self.quota.record_write(1)
        if operation == WriteType.DELETE:
            self.quota.record_delete(1)

    async def _notify_failure(self, result: FlushResult) -> None:
        if self.on_failure is None:
            return
        try:
            maybe = self.on_failure(result)
            if inspect.isawaitable(maybe):
                await maybe
        except Exception:
            logger.exception("Flush failure callback raised")

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def close(self, timeout: float = 10.0) -> list[FlushResult]:
        """Flush everything pending, then wait for timer-driven flushes.

        Bounded by *timeout*. On timeout, interrupted flushes and batches
        that never started are returned as failed results and passed to
        ``on_failure``.
        """
        self._closed = True
        results: list[FlushResult] = []
        abandoned_before = len(self._abandoned)
        try:
            async with asyncio.timeout(timeout):
                results = await self.flush_all()
                if self._tasks:
                    await asyncio.gather(*self._tasks)
        except TimeoutError:
            for key in list(self._pending):
                items = self._detach(key)
                result = FlushResult(collection=key[0], operation=key[1])
                await self._abandon(result, items)
            results.extend(self._abandoned[abandoned_before:])
            lost = sum(len(r.failed) for r in self._abandoned[abandoned_before:])
            logger.error(
                "Batcher shutdown timed out after %.1fs with %d items not committed",
                timeout,
                lost,
            )
        for batch in self._pending.values():
            if batch.timer is not None:
                batch.timer.cancel()
        return results

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queue_depth(self) -> int:
        return sum(len(batch.items) for batch in self._pending.values())

    def pending_keys(self) -> list[BatchKey]:
        return list(self._pending)

    def stats(self) -> BatcherStats:
        return BatcherStats(
            pending_batches=len(self._pending),
            queue_depth=self.queue_depth,
            in_flight=self._in_flight,
            flushes=self.flushes,
            items_committed=self.items_committed,
            items_failed=self.items_failed,
            items_retried=self.items_retried,
            items_abandoned=self.items_abandoned,
        )
