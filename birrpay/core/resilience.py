"""Resilience primitives: store exception hierarchy and per-item retry."""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Exception Hierarchy ──────────────────────────────────────────────────────


class StoreError(Exception):
    """Base class for all document store errors."""


class TransientStoreError(StoreError):
    """Retriable failures (network, timeout, locked database)."""


class PermanentStoreError(StoreError):
    """Non-retriable failures (missing document on update, bad payload)."""


# ── Retry ─────────────────────────────────────────────────────────────────


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` callback that logs each retry."""
    attempt = retry_state.attempt_number
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("Retry attempt %d after error: %s", attempt, exc)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 1,
    max_wait: float = 2.0,
) -> T:
    """Run *operation* up to *attempts* times, retrying only transient errors.

    Raises:
        StoreError: The last error once attempts are exhausted, or the first
            permanent error.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(TransientStoreError),
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.1, min=0.05, max=max_wait),
        before_sleep=log_retry_attempt,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable")  # pragma: no cover
