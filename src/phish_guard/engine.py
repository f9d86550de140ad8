"""The threat analysis and state management engine."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from .allowlist import Allowlist, normalize_email
from .analysis_cache import AnalysisCache
from .config import EngineConfig
from .constants import DEFAULT_ACCOUNT_ID
from .errors import AllowlistInvariantError, StorageError
from .lifecycle import ScanLifecycle
from .locking import FailureTracker
from .models import AnalysisResult, Observation, ProcessedRecord, Record, ScanSummary, StatsSnapshot
from .notify import ALLOWLIST_UPDATED, SCAN_COMPLETE, STATS_UPDATED, NotificationSink
from .scorer import analyze_record
from .stats import BatchScheduler, StatsKind, StatsModel
from .storage import EngineStorage, SaveStatus, StorageBackend

logger = logging.getLogger(__name__)


class PhishGuardEngine:
    """Owns the cache, allow-list, statistics and persistence for one account.

    Construct one per process (or per test); there is no shared module state.
    Call ``load()`` before use and ``close()`` when done so pending counters
    are written.
    """

    def __init__(
        self,
        storage: EngineStorage,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.storage = storage
        self.notifier = notifier
        self._clock = clock

        self.cache = AnalysisCache(
            clock=clock,
            max_size=self.config.max_cache_size,
            expiry=self.config.cache_expiry,
            force_threshold=self.config.force_cleanup_threshold,
        )
        self.allowlist = Allowlist(max_size=self.config.max_allowlist_size)
        self.stats = StatsModel(clock=clock)
        self.scheduler = BatchScheduler(
            self.stats,
            storage,
            delay=self.config.batch_save_delay,
            max_batch_size=self.config.max_batch_size,
            clock=clock,
        )
        self.lifecycle = ScanLifecycle(clock=clock, idle_seconds=self.config.idle_seconds)
        self._counted_threats: set[str] = set()
        self._cleanup_handle: asyncio.TimerHandle | None = None

    @classmethod
    def create(
        cls,
        backend: StorageBackend,
        account_id: str = DEFAULT_ACCOUNT_ID,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
        notifier: NotificationSink | None = None,
    ) -> PhishGuardEngine:
        config = config or EngineConfig()
        storage = EngineStorage(
            backend,
            account_id=account_id,
            failures=FailureTracker(max_failures=config.max_save_failures),
            max_payload_bytes=config.max_payload_bytes,
            clock=clock,
        )
        return cls(storage, config=config, clock=clock, notifier=notifier)

    # --- startup / shutdown ---

    async def load(self) -> None:
        """Load persistent stats and the allow-list. Session counters start at zero."""
        try:
            stored = await self.storage.read_stats()
        except StorageError as exc:
            logger.error("Error loading stats for account %s, starting fresh: %s", self.storage.account_id, exc)
            stored = None
        if stored is not None:
            self.stats.load_persistent(stored.persistent)
        self.stats.reset_session()

        try:
            emails = await self.storage.read_allowlist()
        except StorageError as exc:
            logger.error("Error loading allow-list for account %s: %s", self.storage.account_id, exc)
            emails = None
        if emails is not None:
            self.allowlist.replace(emails)
        self.stats.set_allowlisted(self.allowlist.size())

        self.storage.capture_baseline(self.stats.snapshot, self.allowlist.content_hash())
        logger.info(
            "Loaded account %s: %d total threats, %d allow-listed",
            self.storage.account_id,
            self.stats.snapshot.persistent.total_threats_ever,
            self.allowlist.size(),
        )

    async def close(self) -> SaveStatus:
        """Cancel deferred work and write any pending counters."""
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None
        status = await self.scheduler.close()
        if not status.ok:
            logger.warning("Final stats flush %s; %d updates not saved", status.value, self.scheduler.pending.total)
        return status

    # --- analysis ---

    def analyze(self, record: Record) -> AnalysisResult:
        return analyze_record(record, self.allowlist.contains)

    async def record_observed(self, record: Record) -> Observation:
        """Register a record for this session, counting it once per thread id."""
        observation = self.lifecycle.observe(record)
        if observation.is_new:
            await self.scheduler.increment(StatsKind.SCANNED)
        return observation

    async def process_record(self, record: Record) -> ProcessedRecord:
        """Observe, analyze (or reuse the cached verdict) and count a record."""
        observation = await self.record_observed(record)
        thread_id = record.thread_id

        if not self.cache.needs_analysis(thread_id):
            entry = self.cache.lookup(thread_id)
            if entry is not None:
                result = entry.result
                suppressed = result.is_suspicious and self.allowlist.contains(entry.record.sender_email)
                if suppressed:
                    # Counters already include this threat; only the verdict changes.
                    result = AnalysisResult.allowlisted()
                return ProcessedRecord(
                    record=record,
                    result=result,
                    is_new=observation.is_new,
                    from_cache=True,
                    suppressed=suppressed,
                )

        result = self.analyze(record)
        self.cache.remember(thread_id, result, record)
        if result.is_suspicious and self._first_threat_for(thread_id):
            self.lifecycle.record_threat()
            await self.scheduler.increment(StatsKind.THREATS)
        return ProcessedRecord(record=record, result=result, is_new=observation.is_new)

    def _first_threat_for(self, thread_id: str | None) -> bool:
        if not thread_id:
            return True
        if thread_id in self._counted_threats:
            return False
        self._counted_threats.add(thread_id)
        return True

    # --- allow-list ---

    def is_allowlisted(self, email: str | None) -> bool:
        return self.allowlist.contains(email)

    def allowlist_status(self) -> dict:
        return {
            "count": self.allowlist.size(),
            "max": self.allowlist.max_size,
            "is_full": self.allowlist.is_full(),
        }

    def _sync_allowlisted(self) -> None:
        self.stats.set_allowlisted(self.allowlist.size())

    def _check_allowlist_invariant(self) -> None:
        counted = self.stats.snapshot.persistent.allowlisted
        if counted != self.allowlist.size():
            raise AllowlistInvariantError(
                f"allowlisted counter {counted} != allow-list size {self.allowlist.size()}"
            )

    async def add_to_allowlist(self, email: str | None) -> bool:
        """Trust a sender. Nothing changes unless the allow-list was saved."""
        key = normalize_email(email)
        if not key:
            return False
        if self.allowlist.contains(key):
            return True
        if self.allowlist.is_full():
            logger.warning("Cannot add %s to allow-list - limit of %d reached", key, self.allowlist.max_size)
            return False

        async def _add() -> SaveStatus | None:
            if not self.allowlist.add(key):
                return None
            self._sync_allowlisted()
            status = await self.storage.write_allowlist(self.allowlist.all())
            if not status.ok:
                self.allowlist.remove(key)
                self._sync_allowlisted()
                logger.error("Failed to save allow-list, rolled back add of %s", key)
            return status

        status = await self.storage.lock.run("add_to_allowlist", _add)
        self._check_allowlist_invariant()
        if status is None or not status.ok:
            return False

        logger.info("Added %s to allow-list", key)
        await self.scheduler.increment(StatsKind.ALLOWLISTED)
        await self._notify(ALLOWLIST_UPDATED, self.allowlist_status())
        return True

    async def remove_from_allowlist(self, email: str | None) -> bool:
        key = normalize_email(email)
        if not key or not self.allowlist.contains(key):
            return False

        async def _remove() -> SaveStatus | None:
            if not self.allowlist.remove(key):
                return None
            self._sync_allowlisted()
            status = await self.storage.write_allowlist(self.allowlist.all())
            if not status.ok:
                self.allowlist.add(key)
                self._sync_allowlisted()
                logger.error("Failed to save allow-list, rolled back removal of %s", key)
            return status

        status = await self.storage.lock.run("remove_from_allowlist", _remove)
        self._check_allowlist_invariant()
        if status is None or not status.ok:
            return False

        logger.info("Removed %s from allow-list", key)
        await self.scheduler.increment(StatsKind.ALLOWLISTED)
        await self._notify(ALLOWLIST_UPDATED, self.allowlist_status())
        return True

    # --- statistics ---

    def current_stats(self) -> StatsSnapshot:
        return self.stats.snapshot.copy()

    def legacy_stats(self) -> dict:
        return self.stats.legacy_view()

    async def force_flush(self) -> SaveStatus:
        return await self.scheduler.flush()

    # --- scan lifecycle ---

    async def on_idle_check(self) -> ScanSummary | None:
        """Finalize the scan if it went idle: flush, notify, schedule cache cleanup."""
        summary = self.lifecycle.check_idle()
        if summary is None:
            return None
        return await self._complete_scan(summary)

    async def finish_scan(self) -> ScanSummary | None:
        """Finalize the current scan without waiting for it to go idle."""
        summary = self.lifecycle.finalize()
        if summary is None:
            return None
        return await self._complete_scan(summary)

    async def watch_idle(self, stop: asyncio.Event) -> None:
        """Run ``on_idle_check`` every ``idle_check_interval`` seconds until ``stop`` is set."""
        while not stop.is_set():
            await self.on_idle_check()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.idle_check_interval)
            except asyncio.TimeoutError:
                pass

    async def _complete_scan(self, summary: ScanSummary) -> ScanSummary:
        snapshot = self.stats.snapshot
        summary.session_scanned = snapshot.session.scanned
        summary.session_threats = snapshot.session.threats
        summary.total_threats_ever = snapshot.persistent.total_threats_ever

        status = await self.scheduler.flush()
        if not status.ok:
            logger.warning("End-of-scan stats flush %s", status.value)

        logger.info(
            "Scan report: %d records, %d threats, %.2fs",
            summary.records_scanned,
            summary.threats_found,
            summary.duration,
        )
        await self._notify(STATS_UPDATED, self.legacy_stats())
        await self._notify(
            SCAN_COMPLETE,
            {
                "records_scanned": summary.records_scanned,
                "threats_found": summary.threats_found,
                "duration": summary.duration,
            },
        )
        self._schedule_cache_cleanup()
        return summary

    def _schedule_cache_cleanup(self) -> None:
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
        loop = asyncio.get_running_loop()
        self._cleanup_handle = loop.call_later(self.config.cleanup_delay, self._run_cache_cleanup)

    def _run_cache_cleanup(self) -> None:
        self._cleanup_handle = None
        removed = self.cache.cleanup()
        if removed:
            logger.info("Post-scan cleanup removed %d cache entries", removed)

    async def _notify(self, event: str, payload: dict) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to deliver %s notification: %s", event, exc)
