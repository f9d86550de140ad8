"""Serialization of backend writes and per-class save failure tracking."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from .constants import MAX_SAVE_FAILURES

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceLock:
    """FIFO mutual exclusion for operations that touch the backend.

    A held flag plus a queue of waiter futures. Releasing hands the lock
    directly to the oldest live waiter, so queued operations run in arrival
    order and a newcomer can never jump the queue.
    """

    def __init__(self) -> None:
        self._held = False
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def locked(self) -> bool:
        return self._held

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if not self._held and not self.waiting:
            self._held = True
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # Ownership may already have been handed to us.
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise

    def release(self) -> None:
        if not self._held:
            raise RuntimeError("PersistenceLock released while not held")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)  # hand over; stays held
                return
        self._held = False

    async def run(self, operation_name: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` while holding the lock."""
        await self.acquire()
        logger.debug("Acquired persistence lock for: %s", operation_name)
        try:
            return await fn()
        finally:
            self.release()
            logger.debug("Released persistence lock for: %s", operation_name)


class WriteClass(str, Enum):
    STATS = "stats"
    ALLOWLIST = "allowlist"


class FailureTracker:
    """Consecutive failure counts per write class, acting as a circuit breaker."""

    def __init__(self, max_failures: int = MAX_SAVE_FAILURES) -> None:
        self.max_failures = max_failures
        self._counts: dict[WriteClass, int] = {wc: 0 for wc in WriteClass}

    def count(self, write_class: WriteClass) -> int:
        return self._counts[write_class]

    def is_open(self, write_class: WriteClass) -> bool:
        return self._counts[write_class] >= self.max_failures

    def allow(self, write_class: WriteClass, is_reachable: Callable[[], bool]) -> bool:
        """Decide whether a write may reach the backend.

        Below the limit writes always go through. At the limit ``is_reachable`` is
        consulted: a reachable backend resets the count, otherwise the write
        is skipped.
        """
        if not self.is_open(write_class):
            return True
        if is_reachable():
            logger.info(
                "Backend reachable again - resetting %s failure count from %d to 0",
                write_class.value,
                self._counts[write_class],
            )
            self._counts[write_class] = 0
            return True
        logger.warning(
            "Skipping %s save - exceeded maximum failure count (%d/%d)",
            write_class.value,
            self._counts[write_class],
            self.max_failures,
        )
        return False

    def record_success(self, write_class: WriteClass) -> None:
        self._counts[write_class] = 0

    def record_failure(self, write_class: WriteClass) -> int:
        self._counts[write_class] += 1
        logger.warning(
            "%s save failure count: %d/%d",
            write_class.value.capitalize(),
            self._counts[write_class],
            self.max_failures,
        )
        return self._counts[write_class]
