"""Daily read/write/delete quota accounting for the document store.

The tracker only reports. It never blocks a call: callers consult
``is_read_allowed`` / ``is_write_allowed`` / ``is_delete_allowed`` and
``ttl_multiplier`` and decide for themselves. Counters live in memory and
start from zero on restart.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from birrpay.models.enums import QuotaMode
from birrpay.models.status import QuotaStatus, QuotaUsage

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60

_RANK = {QuotaMode.NORMAL: 0, QuotaMode.CONSERVATIVE: 1, QuotaMode.EMERGENCY: 2}


def _pct(used: int, limit: int) -> float:
    return min(100.0, used / limit * 100)


class RateWindow:
    """Operations counted over a sliding window of the last *seconds*."""

    def __init__(self, seconds: float = 1.0) -> None:
        self.seconds = seconds
        self._events: deque[tuple[float, int]] = deque()
        self._total = 0

    def add(self, now: float, n: int) -> None:
        if n:
            self._events.append((now, n))
            self._total += n

    def count(self, now: float) -> int:
        while self._events and now - self._events[0][0] >= self.seconds:
            _, n = self._events.popleft()
            self._total -= n
        return self._total


class QuotaTracker:
    """Counts store reads, writes and deletes against a rolling daily budget.

    Mode escalates as soon as usage crosses a threshold but only steps back
    down once usage is ``hysteresis_pct`` points below the threshold it is
    leaving. Per-second rates are tracked over a sliding one-second window
    and only affect the ``is_*_allowed`` advice.

    Args:
        read_limit: Reads allowed per window.
        write_limit: Writes allowed per window.
        delete_limit: Deletes allowed per window.
        reads_per_second: Sustained read rate the store accepts.
        writes_per_second: Sustained write rate the store accepts.
        deletes_per_second: Sustained delete rate the store accepts.
        conservative_pct: Usage percentage that enters CONSERVATIVE.
        emergency_pct: Usage percentage that enters EMERGENCY.
        hysteresis_pct: Margin required before de-escalating.
        window_seconds: Length of the accounting window.
        clock: Wall-clock time source (epoch seconds), injectable for tests.
    """

    def __init__(
        self,
        read_limit: int = 50_000,
        write_limit: int = 20_000,
        delete_limit: int = 20_000,
        reads_per_second: int = 1_000,
        writes_per_second: int = 500,
        deletes_per_second: int = 500,
        conservative_pct: float = 70.0,
        emergency_pct: float = 90.0,
        hysteresis_pct: float = 5.0,
        window_seconds: float = DAY_SECONDS,
        conservative_ttl_multiplier: float = 2.0,
        emergency_ttl_multiplier: float = 4.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if min(read_limit, write_limit, delete_limit) <= 0:
            raise ValueError("Quota limits must be positive")
        if min(reads_per_second, writes_per_second, deletes_per_second) <= 0:
            raise ValueError("Rate limits must be positive")
        if not 0 < conservative_pct <= emergency_pct:
            raise ValueError("Thresholds must satisfy 0 < conservative_pct <= emergency_pct")
        self.read_limit = read_limit
        self.write_limit = write_limit
        self.delete_limit = delete_limit
        self.reads_per_second = reads_per_second
        self.writes_per_second = writes_per_second
        self.deletes_per_second = deletes_per_second
        self.conservative_pct = conservative_pct
        self.emergency_pct = emergency_pct
        self.hysteresis_pct = hysteresis_pct
        self.window_seconds = window_seconds
        self.conservative_ttl_multiplier = conservative_ttl_multiplier
        self.emergency_ttl_multiplier = emergency_ttl_multiplier
        self._clock = clock

        self.window_start = clock()
        self.reads_used = 0
        self.writes_used = 0
        self.deletes_used = 0
        self.window_resets = 0
        self._mode = QuotaMode.NORMAL
        self._read_rate = RateWindow()
        self._write_rate = RateWindow()
        self._delete_rate = RateWindow()

    # ── Accounting ────────────────────────────────────────────────────────

    def record_read(self, n: int = 1) -> None:
        if n < 0:
            raise ValueError("Cannot record a negative number of reads")
        self._maybe_reset()
        self.reads_used += n
        self._read_rate.add(self._clock(), n)
        self._update_mode()

    def record_write(self, n: int = 1) -> None:
        if n < 0:
            raise ValueError("Cannot record a negative number of writes")
        self._maybe_reset()
        self.writes_used += n
        self._write_rate.add(self._clock(), n)
        self._update_mode()

    def record_delete(self, n: int = 1) -> None:
        if n < 0:
            raise ValueError("Cannot record a negative number of deletes")
        self._maybe_reset()
        self.deletes_used += n
        self._delete_rate.add(self._clock(), n)
        self._update_mode()

    def _maybe_reset(self) -> None:
        now = self._clock()
        if now - self.window_start < self.window_seconds:
            return
        logger.info(
            "Quota window reset (reads=%d/%d, writes=%d/%d, deletes=%d/%d)",
            self.reads_used,
            self.read_limit,
            self.writes_used,
            self.write_limit,
            self.deletes_used,
            self.delete_limit,
        )
        self.window_start = now
        self.reads_used = 0
        self.writes_used = 0
        self.deletes_used = 0
        self.window_resets += 1
        self._mode = QuotaMode.NORMAL

    # ── Mode ──────────────────────────────────────────────────────────────

    def _mode_for(self, pct: float) -> QuotaMode:
        if pct >= self.emergency_pct:
            return QuotaMode.EMERGENCY
        if pct >= self.conservative_pct:
            return QuotaMode.CONSERVATIVE
        return QuotaMode.NORMAL

    def _usage_pct(self) -> float:
        return max(
            _pct(self.reads_used, self.read_limit),
            _pct(self.writes_used, self.write_limit),
            _pct(self.deletes_used, self.delete_limit),
        )

    def _update_mode(self) -> None:
        pct = self._usage_pct()
        raw = self._mode_for(pct)
        current = self._mode
        if _RANK[raw] >= _RANK[current]:
            new = raw
        else:
            damped = self._mode_for(pct + self.hysteresis_pct)
            new = damped if _RANK[damped] < _RANK[current] else current
        if new != current:
            logger.warning("Quota mode %s -> %s (usage %.1f%%)", current, new, pct)
            self._mode = new

    @property
    def mode(self) -> QuotaMode:
        self._maybe_reset()
        self._update_mode()
        return self._mode

    # ── Rates ─────────────────────────────────────────────────────────────

    def current_reads_per_second(self) -> int:
        return self._read_rate.count(self._clock())

    def current_writes_per_second(self) -> int:
        return self._write_rate.count(self._clock())

    def current_deletes_per_second(self) -> int:
        return self._delete_rate.count(self._clock())

    # ── Advisory ──────────────────────────────────────────────────────────

    def is_read_allowed(self) -> bool:
        self._maybe_reset()
        return (
            self.reads_used < self.read_limit
            and self.current_reads_per_second() < self.reads_per_second
        )

    def is_write_allowed(self) -> bool:
        return (
            self.mode != QuotaMode.EMERGENCY
            and self.writes_used < self.write_limit
            and self.current_writes_per_second() < self.writes_per_second
        )

    def is_delete_allowed(self) -> bool:
        return (
            self.mode != QuotaMode.EMERGENCY
            and self.deletes_used < self.delete_limit
            and self.current_deletes_per_second() < self.deletes_per_second
        )

    def ttl_multiplier(self) -> float:
        """How much callers should stretch cache TTLs in the current mode."""
        mode = self.mode
        if mode == QuotaMode.EMERGENCY:
            return self.emergency_ttl_multiplier
        if mode == QuotaMode.CONSERVATIVE:
            return self.conservative_ttl_multiplier
        return 1.0

    def status(self) -> QuotaStatus:
        mode = self.mode
        return QuotaStatus(
            reads=_usage(self.reads_used, self.read_limit),
            writes=_usage(self.writes_used, self.write_limit),
            deletes=_usage(self.deletes_used, self.delete_limit),
            reads_per_second=self.current_reads_per_second(),
            writes_per_second=self.current_writes_per_second(),
            deletes_per_second=self.current_deletes_per_second(),
            mode=mode,
            window_start=datetime.fromtimestamp(self.window_start, tz=UTC),
            window_resets_at=datetime.fromtimestamp(
                self.window_start + self.window_seconds, tz=UTC
            ),
        )


def _usage(used: int, limit: int) -> QuotaUsage:
    return QuotaUsage(
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        pct=_pct(used, limit),
    )
