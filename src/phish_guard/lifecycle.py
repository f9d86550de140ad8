"""Scan lifecycle: per-session deduplication and idle-based scan completion."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .constants import IDLE_SECONDS
from .models import Observation, Record, ScanSummary

logger = logging.getLogger(__name__)


class ScanLifecycle:
    """Tracks which threads were seen this session and when a scan goes idle.

    A scan starts with the first new observation and is finalized by
    ``check_idle()`` once ``idle_seconds`` pass without another one.
    """

    def __init__(self, clock: Callable[[], float] = time.time, idle_seconds: float = IDLE_SECONDS) -> None:
        self._clock = clock
        self.idle_seconds = idle_seconds
        self._seen: set[str] = set()
        self.seen_count = 0
        self.is_active = False
        self.last_activity_at: float | None = None
        self._scan_started_at: float | None = None
        self._scan_records = 0
        self._scan_threats = 0

    def observe(self, record: Record) -> Observation:
        """Register a record. Records without a thread id are always new."""
        thread_id = record.thread_id
        if thread_id and thread_id in self._seen:
            logger.debug("Record %s already processed this session", thread_id)
            return Observation(is_new=False)

        if thread_id:
            self._seen.add(thread_id)
        now = self._clock()
        self.seen_count += 1
        self.last_activity_at = now
        if not self.is_active:
            self.is_active = True
            self._scan_started_at = now
            self._scan_records = 0
            self._scan_threats = 0
        self._scan_records += 1
        return Observation(is_new=True)

    def record_threat(self) -> None:
        self._scan_threats += 1

    def check_idle(self) -> ScanSummary | None:
        """Finalize the current scan if it has gone idle."""
        if not self.is_active or self.seen_count == 0 or self.last_activity_at is None:
            return None
        now = self._clock()
        if now - self.last_activity_at < self.idle_seconds:
            return None
        return self.finalize(now)

    def finalize(self, now: float | None = None) -> ScanSummary | None:
        """End the current scan regardless of idleness."""
        if not self.is_active:
            return None
        ended_at = self._clock() if now is None else now
        self.is_active = False
        summary = ScanSummary(
            records_scanned=self._scan_records,
            threats_found=self._scan_threats,
            started_at=self._scan_started_at if self._scan_started_at is not None else ended_at,
            ended_at=ended_at,
        )
        logger.info(
            "Scan finalized: %d records, %d threats", summary.records_scanned, summary.threats_found
        )
        return summary
