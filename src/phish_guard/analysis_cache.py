"""In-memory cache of analysis results keyed by thread id."""

from __future__ import annotations

import logging
import time
from typing import Callable

from .constants import (
    CACHE_CLEANUP_TRIGGER,
    CACHE_EXPIRY,
    FORCE_CLEANUP_KEEP,
    FORCE_CLEANUP_THRESHOLD,
    MAX_CACHE_SIZE,
)
from .models import AnalysisResult, CacheEntry, Record

logger = logging.getLogger(__name__)


class AnalysisCache:
    """Bounded memo of verdicts so rows can be redisplayed without rescoring.

    Entries expire after ``expiry`` seconds. ``cleanup()`` drops expired
    entries and then the oldest ones until the cache fits in ``max_size``.
    Above ``force_threshold`` a fast path keeps only the newest
    ``FORCE_CLEANUP_KEEP`` share of the threshold.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_size: int = MAX_CACHE_SIZE,
        expiry: float = CACHE_EXPIRY,
        force_threshold: int = FORCE_CLEANUP_THRESHOLD,
    ) -> None:
        self._clock = clock
        self.max_size = max_size
        self.expiry = expiry
        self.force_threshold = force_threshold
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._entries

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.expiry

    # --- public API ---

    def needs_analysis(self, thread_id: str | None) -> bool:
        """True if the thread has no fresh cached verdict."""
        if not thread_id:
            return True
        entry = self._entries.get(thread_id)
        if entry is None:
            return True
        return self._is_expired(entry, self._clock())

    def lookup(self, thread_id: str | None) -> CacheEntry | None:
        if not thread_id:
            return None
        entry = self._entries.get(thread_id)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[thread_id]
            return None
        return entry

    def remember(self, thread_id: str | None, result: AnalysisResult, record: Record) -> None:
        """Store a verdict, replacing any previous entry for the thread."""
        if not thread_id:
            return
        self._entries.pop(thread_id, None)
        self._entries[thread_id] = CacheEntry(
            thread_id=thread_id,
            result=result,
            record=record,
            created_at=self._clock(),
        )
        if len(self._entries) > self.max_size * CACHE_CLEANUP_TRIGGER:
            self.cleanup()

    def cleanup(self) -> int:
        """Evict expired and excess entries. Returns the number removed."""
        before = len(self._entries)
        now = self._clock()

        if before > self.force_threshold:
            keep = int(self.force_threshold * FORCE_CLEANUP_KEEP)
            ordered = sorted(self._entries.values(), key=lambda e: e.created_at)
            self._entries = {e.thread_id: e for e in ordered[len(ordered) - keep :]}
            logger.warning(
                "Analysis cache reached %d entries, force-trimmed to %d", before, len(self._entries)
            )

        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]

        excess = len(self._entries) - self.max_size
        if excess > 0:
            oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:excess]
            for entry in oldest:
                del self._entries[entry.thread_id]

        removed = before - len(self._entries)
        if removed:
            logger.debug("Cache cleanup: removed %d entries, %d remaining", removed, len(self._entries))
        return removed

    def clear(self) -> None:
        self._entries.clear()
