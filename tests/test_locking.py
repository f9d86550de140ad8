"""Tests for the persistence lock and the failure tracker."""

import asyncio

import pytest

from phish_guard.locking import FailureTracker, PersistenceLock, WriteClass


@pytest.mark.asyncio
async def test_operations_run_one_at_a_time_in_arrival_order():
    lock = PersistenceLock()
    events = []

    async def op(i):
        async def body():
            events.append(("start", i))
            await asyncio.sleep(0)
            events.append(("end", i))
            return i

        return await lock.run(f"op{i}", body)

    results = await asyncio.gather(*(op(i) for i in range(4)))

    assert results == [0, 1, 2, 3]
    assert events == [(kind, i) for i in range(4) for kind in ("start", "end")]
    assert not lock.locked


@pytest.mark.asyncio
async def test_release_hands_lock_to_oldest_waiter():
    lock = PersistenceLock()
    await lock.acquire()
    order = []

    async def waiter(i):
        await lock.acquire()
        order.append(i)
        lock.release()

    tasks = [asyncio.create_task(waiter(i)) for i in range(3)]
    await asyncio.sleep(0)
    assert lock.waiting == 3

    lock.release()
    # still held: ownership moved to the first waiter
    assert lock.locked
    await asyncio.gather(*tasks)
    assert order == [0, 1, 2]
    assert not lock.locked


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_lock():
    lock = PersistenceLock()
    await lock.acquire()
    first = asyncio.create_task(lock.acquire())
    second = asyncio.create_task(lock.acquire())
    await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    lock.release()
    await second
    assert lock.locked
    lock.release()
    assert not lock.locked


@pytest.mark.asyncio
async def test_lock_released_when_operation_raises():
    lock = PersistenceLock()

    async def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await lock.run("boom", boom)
    assert not lock.locked


def test_release_unheld_lock_raises():
    with pytest.raises(RuntimeError):
        PersistenceLock().release()


def test_breaker_opens_after_max_failures():
    tracker = FailureTracker(max_failures=3)
    for _ in range(3):
        assert tracker.allow(WriteClass.STATS, lambda: False)
        tracker.record_failure(WriteClass.STATS)
    assert tracker.is_open(WriteClass.STATS)
    assert not tracker.allow(WriteClass.STATS, lambda: False)
    # classes are tracked independently
    assert tracker.allow(WriteClass.ALLOWLIST, lambda: False)


def test_breaker_half_open_check_resets():
    tracker = FailureTracker(max_failures=3)
    for _ in range(3):
        tracker.record_failure(WriteClass.STATS)
    assert tracker.allow(WriteClass.STATS, lambda: True)
    assert tracker.count(WriteClass.STATS) == 0


def test_success_resets_count():
    tracker = FailureTracker(max_failures=3)
    tracker.record_failure(WriteClass.ALLOWLIST)
    tracker.record_failure(WriteClass.ALLOWLIST)
    tracker.record_success(WriteClass.ALLOWLIST)
    assert tracker.count(WriteClass.ALLOWLIST) == 0
