"""Session and persistent statistics, and batching of their persistence."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable

from .constants import BATCH_SAVE_DELAY, MAX_BATCH_SIZE
from .errors import StatsValidationError
from .models import PendingBatch, PersistentStats, SessionStats, StatsSnapshot
from .storage import EngineStorage, SaveStatus

logger = logging.getLogger(__name__)


class StatsKind(str, Enum):
    SCANNED = "scanned"
    THREATS = "threats"
    ALLOWLISTED = "allowlisted"


def validate_increment(kind: StatsKind | str, n: int) -> StatsKind:
    """Return the counter kind, or raise StatsValidationError."""
    try:
        parsed = StatsKind(kind)
    except ValueError:
        raise StatsValidationError(f"Invalid stats type: {kind!r}") from None
    if isinstance(n, bool) or not isinstance(n, int):
        raise StatsValidationError(f"Increment must be an integer, got {n!r}")
    if n < 0:
        raise StatsValidationError(f"Negative increment not allowed: {n}")
    return parsed


class StatsModel:
    """In-memory owner of the StatsSnapshot."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        now = clock()
        self.snapshot = StatsSnapshot(
            session=SessionStats(session_start=now),
            persistent=PersistentStats(last_updated=now),
        )

    def apply(self, kind: StatsKind, n: int) -> None:
        """Apply a validated increment.

        ``allowlisted`` is not counted here: the persistent field tracks the
        allow-list size and only ``set_allowlisted`` writes it.
        """
        if kind is StatsKind.SCANNED:
            self.snapshot.session.scanned += n
            self.snapshot.persistent.total_scanned_ever += n
        elif kind is StatsKind.THREATS:
            self.snapshot.session.threats += n
            self.snapshot.persistent.total_threats_ever += n

    def set_allowlisted(self, size: int) -> None:
        self.snapshot.persistent.allowlisted = size

    def reset_session(self) -> None:
        self.snapshot.session = SessionStats(session_start=self._clock())
        logger.debug("Session stats reset - starting fresh count")

    def load_persistent(self, persistent: PersistentStats) -> None:
        self.snapshot.persistent = persistent

    def legacy_view(self) -> dict:
        return self.snapshot.legacy_view()


class BatchScheduler:
    """Coalesces counter increments into infrequent stats writes.

    Each increment restarts a debounce timer of ``delay`` seconds; when it
    fires the pending batch is flushed. A batch whose total exceeds
    ``max_batch_size`` is flushed right away.
    """

    def __init__(
        self,
        stats: StatsModel,
        storage: EngineStorage,
        delay: float = BATCH_SAVE_DELAY,
        max_batch_size: int = MAX_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.stats = stats
        self.storage = storage
        self.delay = delay
        self.max_batch_size = max_batch_size
        self._clock = clock
        self._pending = PendingBatch(timestamp=clock())
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self.last_status: SaveStatus | None = None

    @property
    def pending(self) -> PendingBatch:
        return PendingBatch(
            scanned=self._pending.scanned,
            threats=self._pending.threats,
            allowlisted=self._pending.allowlisted,
            timestamp=self._pending.timestamp,
        )

    @property
    def has_pending(self) -> bool:
        return not self._pending.is_empty()

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    async def increment(self, kind: StatsKind | str, n: int = 1) -> SaveStatus | None:
        """Count ``n`` events of ``kind``.

        Returns the flush status when the increment forced a flush, else None.
        """
        parsed = validate_increment(kind, n)

        self.stats.apply(parsed, n)
        self._pending.add(parsed.value, n, self._clock())
        self._schedule()

        if self._pending.total > self.max_batch_size:
            logger.debug("Pending batch exceeds %d, flushing now", self.max_batch_size)
            return await self.flush()
        return None

    def _schedule(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scheduled stats flush failed", exc_info=task.exception())

    async def flush(self) -> SaveStatus:
        """Write pending increments now."""
        self._cancel_timer()
        status = await self.storage.lock.run("flush_stats", self._flush_locked)
        self.last_status = status
        return status

    async def _flush_locked(self) -> SaveStatus:
        # Another flush may have written everything while we queued.
        if self._pending.is_empty():
            return SaveStatus.UNCHANGED

        batch = self._pending.drain(self._clock())
        logger.debug(
            "Flushing pending updates: scanned=%d threats=%d allowlisted=%d",
            batch.scanned,
            batch.threats,
            batch.allowlisted,
        )
        try:
            status = await self.storage.write_stats(self.stats.snapshot)
        except BaseException:
            self._pending.restore(batch)
            raise
        if not status.ok:
            self._pending.restore(batch)
            logger.warning("Stats flush %s, keeping %d pending updates", status.value, batch.total)
        return status

    async def close(self) -> SaveStatus:
        """Cancel the timer, wait for scheduled flushes and flush what is left."""
        self._cancel_timer()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        return await self.flush()
