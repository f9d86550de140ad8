"""Tests for the stats model and the batching scheduler."""

import asyncio

import pytest

from phish_guard.errors import StatsValidationError
from phish_guard.locking import WriteClass
from phish_guard.stats import BatchScheduler, StatsKind, StatsModel, validate_increment
from phish_guard.storage import EngineStorage, MemoryBackend, SaveStatus


def _scheduler(clock, backend=None, delay=60.0, max_batch_size=50):
    backend = backend or MemoryBackend()
    stats = StatsModel(clock=clock)
    storage = EngineStorage(backend, clock=clock)
    return BatchScheduler(stats, storage, delay=delay, max_batch_size=max_batch_size, clock=clock), backend


@pytest.mark.parametrize("kind, n", [("bogus", 1), ("scanned", -1), ("threats", 1.5), ("scanned", True)])
def test_invalid_increments_rejected(kind, n):
    with pytest.raises(StatsValidationError):
        validate_increment(kind, n)


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        validate_increment("bogus", 1)


def test_apply_updates_session_and_persistent(clock):
    stats = StatsModel(clock=clock)
    stats.apply(StatsKind.SCANNED, 3)
    stats.apply(StatsKind.THREATS, 1)
    stats.apply(StatsKind.ALLOWLISTED, 5)
    snapshot = stats.snapshot
    assert (snapshot.session.scanned, snapshot.session.threats) == (3, 1)
    assert snapshot.persistent.total_scanned_ever == 3
    assert snapshot.persistent.total_threats_ever == 1
    # allow-listed count follows the allow-list, not increments
    assert snapshot.persistent.allowlisted == 0


def test_reset_session_keeps_persistent(clock):
    stats = StatsModel(clock=clock)
    stats.apply(StatsKind.SCANNED, 4)
    clock.advance(10)
    stats.reset_session()
    assert stats.snapshot.session.scanned == 0
    assert stats.snapshot.session.session_start == clock.now
    assert stats.snapshot.persistent.total_scanned_ever == 4


def test_legacy_view(clock):
    stats = StatsModel(clock=clock)
    stats.apply(StatsKind.SCANNED, 2)
    stats.set_allowlisted(3)
    assert stats.legacy_view() == {
        "scanned": 2,
        "threats": 0,
        "allowlisted": 3,
        "last_updated": clock.now,
    }


@pytest.mark.asyncio
async def test_invalid_increment_changes_nothing(clock):
    scheduler, backend = _scheduler(clock)
    with pytest.raises(StatsValidationError):
        await scheduler.increment("scanned", -2)
    assert scheduler.stats.snapshot.session.scanned == 0
    assert not scheduler.has_pending
    assert not scheduler.timer_active


@pytest.mark.asyncio
async def test_increments_coalesce_into_one_write(clock):
    scheduler, backend = _scheduler(clock)
    for _ in range(7):
        assert await scheduler.increment("scanned") is None
    assert backend.write_attempts == 0
    assert scheduler.pending.scanned == 7

    assert await scheduler.flush() is SaveStatus.SAVED
    assert len(backend.writes) == 1
    stored = backend.writes[0]["stats:default"]
    assert stored["unified"]["session"]["scanned"] == 7
    assert stored["totalEmailsScanned"] == 7
    assert not scheduler.has_pending
    assert not scheduler.timer_active


@pytest.mark.asyncio
async def test_debounce_timer_flushes(clock):
    scheduler, backend = _scheduler(clock, delay=0.01)
    await scheduler.increment(StatsKind.SCANNED)
    await scheduler.increment(StatsKind.THREATS)
    assert scheduler.timer_active

    await asyncio.sleep(0.1)
    assert len(backend.writes) == 1
    assert scheduler.last_status is SaveStatus.SAVED
    assert not scheduler.timer_active
    await scheduler.close()


@pytest.mark.asyncio
async def test_large_batch_flushes_immediately(clock):
    scheduler, backend = _scheduler(clock, max_batch_size=5)
    for _ in range(5):
        await scheduler.increment("scanned")
    assert backend.write_attempts == 0
    assert await scheduler.increment("scanned") is SaveStatus.SAVED
    assert backend.write_attempts == 1
    assert not scheduler.has_pending


@pytest.mark.asyncio
async def test_failed_flush_keeps_pending(clock):
    backend = MemoryBackend()
    backend.fail_writes = True
    scheduler, _ = _scheduler(clock, backend=backend)
    for _ in range(3):
        await scheduler.increment("scanned")

    assert await scheduler.flush() is SaveStatus.FAILED
    assert scheduler.pending.scanned == 3

    await scheduler.increment("threats")
    backend.fail_writes = False
    assert await scheduler.flush() is SaveStatus.SAVED
    assert not scheduler.has_pending
    stored = backend.data["stats:default"]["unified"]["session"]
    assert (stored["scanned"], stored["threats"]) == (3, 1)


class _CrashingBackend(MemoryBackend):
    async def set(self, mapping):
        self.write_attempts += 1
        raise RuntimeError("unexpected backend fault")


@pytest.mark.asyncio
async def test_unexpected_backend_error_keeps_pending(clock):
    scheduler, backend = _scheduler(clock, backend=_CrashingBackend())
    for _ in range(5):
        await scheduler.increment("scanned")

    assert await scheduler.flush() is SaveStatus.FAILED
    assert scheduler.pending.scanned == 5
    assert scheduler.storage.failures.count(WriteClass.STATS) == 1
    assert not scheduler.storage.lock.locked


@pytest.mark.asyncio
async def test_pending_restored_when_write_raises(clock, monkeypatch):
    scheduler, _ = _scheduler(clock)
    await scheduler.increment("threats", 2)

    async def explode(snapshot):
        raise RuntimeError("boom")

    monkeypatch.setattr(scheduler.storage, "write_stats", explode)
    with pytest.raises(RuntimeError):
        await scheduler.flush()
    assert scheduler.pending.threats == 2
    assert not scheduler.storage.lock.locked


@pytest.mark.asyncio
async def test_flush_with_nothing_pending(clock):
    scheduler, backend = _scheduler(clock)
    assert await scheduler.flush() is SaveStatus.UNCHANGED
    assert backend.write_attempts == 0


@pytest.mark.asyncio
async def test_close_flushes_remaining(clock):
    scheduler, backend = _scheduler(clock)
    await scheduler.increment("scanned", 4)
    assert await scheduler.close() is SaveStatus.SAVED
    assert backend.data["stats:default"]["unified"]["persistent"]["totalScannedEver"] == 4
    assert not scheduler.timer_active
