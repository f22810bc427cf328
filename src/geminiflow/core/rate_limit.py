"""Dual-window cooperative rate limiter."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from typing import AsyncIterator, Awaitable, Callable, Deque, TypeVar

from .models import CombinedUsage, LimitConfig, UsageSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

# Shortest sleep between re-checks; keeps float rounding at the window edge from spinning.
_MIN_SLEEP = 0.001


class WindowTracker:
    """Permit timestamps for one trailing window, oldest first.

    Records are never deleted on a timer. Expired ones always form a prefix
    of the deque and are dropped the next time :meth:`active_count` runs.
    """

    def __init__(self, limit: LimitConfig) -> None:
        self._limit = limit
        self._window = limit.window_seconds
        self._records: Deque[float] = deque()

    @property
    def limit(self) -> LimitConfig:
        return self._limit

    def record_permit(self, now: float) -> None:
        """Append a permit issued at ``now``. Capacity is the caller's problem."""

        self._records.append(now)

    def active_count(self, now: float) -> int:
        cutoff = now - self._window
        while self._records and self._records[0] <= cutoff:
            self._records.popleft()
        return len(self._records)

    def next_available_at(self, now: float) -> float:
        """Return the instant a permit could next be granted."""

        active = self.active_count(now)
        if active < self._limit.max_requests:
            return now
        # the slot frees when the record max_requests places from the end expires
        return self._records[active - self._limit.max_requests] + self._window

    def snapshot(self, now: float) -> UsageSnapshot:
        """Usage at ``now`` computed without trimming any records."""

        cutoff = now - self._window
        expired = 0
        for stamp in self._records:
            if stamp > cutoff:
                break
            expired += 1
        used = len(self._records) - expired
        maximum = self._limit.max_requests
        if used >= maximum:
            reset_at = self._records[expired + used - maximum] + self._window
        else:
            reset_at = now
        return UsageSnapshot(used=used, remaining=max(0, maximum - used), reset_at=reset_at)


class AdmissionGate:
    """Blocking admission for a single window.

    Callers queue on a FIFO lock; only the head of the queue sleeps toward
    the next free slot and re-checks after every wake-up. The lock is never
    held while the admitted operation runs.
    """

    def __init__(
        self,
        limit: LimitConfig,
        *,
        name: str = "gate",
        clock: Clock = time.time,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._tracker = WindowTracker(limit)
        self._name = name
        self._clock = clock
        self._sleep = sleep
        self._queue = asyncio.Lock()
        self._pending = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> LimitConfig:
        return self._tracker.limit

    @property
    def waiting(self) -> int:
        """Number of callers currently queued in acquire/check_limit."""

        return self._pending

    @contextlib.asynccontextmanager
    async def _turn(self) -> AsyncIterator[None]:
        self._pending += 1
        try:
            async with self._queue:
                yield
        finally:
            self._pending -= 1

    async def _wait_for_slot(self) -> float:
        while True:
            now = self._clock()
            # float rounding can leave a record active at exactly stamp + window
            if self._tracker.active_count(now) < self.limit.max_requests:
                return now
            wait = max(self._tracker.next_available_at(now) - now, _MIN_SLEEP)
            logger.debug(
                "%s gate full (%d per %dms), waiting %.3fs",
                self._name,
                self.limit.max_requests,
                self.limit.window_ms,
                wait,
            )
            await self._sleep(wait)

    async def acquire(self) -> None:
        """Wait until the window has room, then record a permit."""

        async with self._turn():
            now = await self._wait_for_slot()
            self._tracker.record_permit(now)

    async def check_limit(self) -> None:
        """Wait until a permit would be granted without recording one."""

        async with self._turn():
            await self._wait_for_slot()

    def has_capacity(self) -> bool:
        """True when a permit could be granted right now without jumping the queue."""

        if self._pending:
            return False
        return self._tracker.active_count(self._clock()) < self.limit.max_requests

    def try_acquire(self) -> bool:
        if not self.has_capacity():
            return False
        self._tracker.record_permit(self._clock())
        return True

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Admit, then run ``operation``. Failures keep their permit."""

        await self.acquire()
        return await operation()

    def get_stats(self) -> UsageSnapshot:
        return self._tracker.snapshot(self._clock())


class CompositeLimiter:
    """Short-window gate chained in front of a long-window gate."""

    def __init__(self, short: AdmissionGate, long: AdmissionGate) -> None:
        self._short = short
        self._long = long

    @classmethod
    def from_limits(
        cls,
        short: LimitConfig,
        long: LimitConfig,
        *,
        clock: Clock = time.time,
        sleep: Sleeper = asyncio.sleep,
    ) -> "CompositeLimiter":
        return cls(
            AdmissionGate(short, name="short", clock=clock, sleep=sleep),
            AdmissionGate(long, name="long", clock=clock, sleep=sleep),
        )

    @property
    def short(self) -> AdmissionGate:
        return self._short

    @property
    def long(self) -> AdmissionGate:
        return self._long

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` once both gates admit it.

        The short permit is recorded before the long gate is consulted and is
        kept even if the long gate makes the caller wait.
        """

        return await self._short.execute(lambda: self._long.execute(operation))

    async def acquire(self) -> None:
        await self._short.acquire()
        await self._long.acquire()

    async def check_limit(self) -> None:
        await self._short.check_limit()
        await self._long.check_limit()

    def try_acquire(self) -> bool:
        """Record on both gates, or on neither."""

        if not (self._short.has_capacity() and self._long.has_capacity()):
            return False
        self._short.try_acquire()
        self._long.try_acquire()
        return True

    def get_stats(self) -> CombinedUsage:
        return CombinedUsage(short=self._short.get_stats(), long=self._long.get_stats())
