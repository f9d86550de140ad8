"""Tests for the persistence backends and EngineStorage."""

import pytest

from phish_guard.allowlist import fingerprint_emails
from phish_guard.errors import PayloadTooLargeError, StorageError
from phish_guard.locking import WriteClass
from phish_guard.models import PersistentStats, SessionStats, StatsSnapshot
from phish_guard.storage import (
    EngineStorage,
    MemoryBackend,
    SaveStatus,
    SqliteBackend,
    decode_stats_payload,
    encode_stats_payload,
    resolve_account_id,
    validate_payload_size,
)


def _snapshot() -> StatsSnapshot:
    return StatsSnapshot(
        session=SessionStats(scanned=12, threats=2, session_start=1000.0),
        persistent=PersistentStats(
            total_threats_ever=9, allowlisted=1, total_scanned_ever=120, last_updated=1000.0
        ),
    )


@pytest.mark.parametrize(
    "value, expected",
    [
        ("https://mail.google.com/mail/u/1/#inbox", "u_1"),
        ("https://mail.google.com/mail/u/0/", "u_0"),
        ("https://example.com/inbox", "default"),
        ("work", "work"),
        ("", "default"),
        (None, "default"),
    ],
)
def test_resolve_account_id(value, expected):
    assert resolve_account_id(value) == expected


def test_validate_payload_size():
    assert validate_payload_size({"a": 1}, max_size=100) > 0
    with pytest.raises(PayloadTooLargeError):
        validate_payload_size({"a": "x" * 200}, max_size=100)


def test_stats_payload_carries_legacy_fields():
    payload = encode_stats_payload(_snapshot())
    assert payload["version"] == "2.0"
    assert payload["totalThreatsEverFound"] == 9
    assert payload["emailsWhitelisted"] == 1
    assert payload["totalEmailsScanned"] == 120
    assert decode_stats_payload(payload) == _snapshot()


def test_legacy_flat_payload_is_migrated():
    snapshot = decode_stats_payload(
        {"totalThreatsEverFound": 7, "emailsWhitelisted": 2, "totalEmailsScanned": 40, "lastUpdated": 5.0}
    )
    assert snapshot.persistent == PersistentStats(
        total_threats_ever=7, allowlisted=2, total_scanned_ever=40, last_updated=5.0
    )
    assert snapshot.session.scanned == 0


@pytest.mark.asyncio
async def test_memory_round_trip():
    storage = EngineStorage(MemoryBackend(), clock=lambda: 1000.0)
    snapshot = _snapshot()
    assert await storage.save_stats(snapshot) is SaveStatus.SAVED
    assert await storage.read_stats() == snapshot


@pytest.mark.asyncio
async def test_sqlite_round_trip(tmp_path):
    with SqliteBackend(tmp_path / "store.db") as backend:
        storage = EngineStorage(backend, account_id="u_1", clock=lambda: 1000.0)
        assert await storage.save_stats(_snapshot()) is SaveStatus.SAVED
        assert await storage.save_allowlist(["b@x.com", "a@x.com"]) is SaveStatus.SAVED

    with SqliteBackend(tmp_path / "store.db") as backend:
        storage = EngineStorage(backend, account_id="u_1")
        assert await storage.read_stats() == _snapshot()
        assert await storage.read_allowlist() == ["a@x.com", "b@x.com"]
        info = backend.get_info()
        assert info["key_count"] == 2
        assert info["bytes_in_use"] > 0


@pytest.mark.asyncio
async def test_accounts_are_isolated():
    backend = MemoryBackend()
    await EngineStorage(backend, account_id="u_0").save_allowlist(["a@x.com"])
    assert await EngineStorage(backend, account_id="u_1").read_allowlist() is None
    assert set(backend.data) == {"allowlist:u_0"}


@pytest.mark.asyncio
async def test_unchanged_stats_are_not_rewritten():
    backend = MemoryBackend()
    storage = EngineStorage(backend)
    snapshot = _snapshot()
    assert await storage.save_stats(snapshot) is SaveStatus.SAVED
    assert await storage.save_stats(snapshot) is SaveStatus.UNCHANGED
    snapshot.session.scanned += 1
    assert await storage.save_stats(snapshot) is SaveStatus.SAVED
    assert backend.write_attempts == 2


@pytest.mark.asyncio
async def test_baseline_from_load_skips_identical_allowlist():
    backend = MemoryBackend()
    storage = EngineStorage(backend)
    storage.capture_baseline(_snapshot(), fingerprint_emails(["a@x.com"]))
    assert await storage.save_allowlist(["a@x.com"]) is SaveStatus.UNCHANGED
    assert backend.write_attempts == 0


@pytest.mark.asyncio
async def test_oversized_payload_is_rejected_before_backend():
    backend = MemoryBackend()
    storage = EngineStorage(backend, max_payload_bytes=50)
    emails = [f"user{i}@example.com" for i in range(20)]
    assert await storage.save_allowlist(emails) is SaveStatus.TOO_LARGE
    assert backend.write_attempts == 0
    assert storage.failures.count(WriteClass.ALLOWLIST) == 0


@pytest.mark.asyncio
async def test_quota_exceeded_is_a_failed_write():
    backend = MemoryBackend(quota_bytes=50)
    storage = EngineStorage(backend)
    emails = [f"user{i}@example.com" for i in range(20)]
    assert await storage.save_allowlist(emails) is SaveStatus.FAILED
    assert storage.failures.count(WriteClass.ALLOWLIST) == 1


@pytest.mark.asyncio
async def test_sqlite_quota(tmp_path):
    with SqliteBackend(tmp_path / "store.db", quota_bytes=64) as backend:
        storage = EngineStorage(backend)
        emails = [f"user{i}@example.com" for i in range(20)]
        assert await storage.save_allowlist(emails) is SaveStatus.FAILED
        assert await storage.read_allowlist() is None


@pytest.mark.asyncio
async def test_circuit_breaker_skips_then_recovers():
    backend = MemoryBackend()
    backend.fail_writes = True
    storage = EngineStorage(backend)
    snapshot = _snapshot()

    for _ in range(3):
        assert await storage.save_stats(snapshot) is SaveStatus.FAILED
    assert backend.write_attempts == 3

    backend.available = False
    assert await storage.save_stats(snapshot) is SaveStatus.SKIPPED
    assert backend.write_attempts == 3

    backend.available = True
    backend.fail_writes = False
    assert await storage.save_stats(snapshot) is SaveStatus.SAVED
    assert storage.failures.count(WriteClass.STATS) == 0


@pytest.mark.asyncio
async def test_breaker_is_per_write_class():
    backend = MemoryBackend()
    backend.fail_writes = True
    storage = EngineStorage(backend)
    for _ in range(3):
        await storage.save_stats(_snapshot())
    backend.available = False
    backend.fail_writes = False
    assert await storage.save_stats(_snapshot()) is SaveStatus.SKIPPED
    # allow-list writes still reach the backend
    assert await storage.save_allowlist(["a@x.com"]) is SaveStatus.FAILED


@pytest.mark.asyncio
async def test_reads_are_retried_then_raise():
    backend = MemoryBackend()
    backend.fail_reads = True
    storage = EngineStorage(backend)
    with pytest.raises(StorageError):
        await storage.read_stats()
    assert backend.read_attempts == 3
    assert not storage.lock.locked


class _TimingOutBackend(MemoryBackend):
    async def get(self, keys):
        self.read_attempts += 1
        raise TimeoutError("backend timed out")


class _BrokenWriteBackend(MemoryBackend):
    async def set(self, mapping):
        self.write_attempts += 1
        raise RuntimeError("disk on fire")


@pytest.mark.asyncio
async def test_read_timeouts_are_retried_and_reported_as_storage_error():
    backend = _TimingOutBackend()
    storage = EngineStorage(backend)
    with pytest.raises(StorageError):
        await storage.read_allowlist()
    assert backend.read_attempts == 3
    assert not storage.lock.locked


@pytest.mark.asyncio
async def test_unexpected_write_error_is_a_failed_save():
    backend = _BrokenWriteBackend()
    storage = EngineStorage(backend)
    assert await storage.save_stats(_snapshot()) is SaveStatus.FAILED
    assert storage.failures.count(WriteClass.STATS) == 1
    assert not storage.lock.locked


@pytest.mark.asyncio
async def test_corrupt_stats_payload_raises_storage_error():
    backend = MemoryBackend({"stats:default": {"totalThreatsEverFound": "lots"}})
    storage = EngineStorage(backend)
    with pytest.raises(StorageError, match="corrupt"):
        await storage.read_stats()
    assert not storage.lock.locked


@pytest.mark.asyncio
async def test_corrupt_allowlist_payload_raises_storage_error():
    backend = MemoryBackend({"allowlist:default": 42})
    storage = EngineStorage(backend)
    with pytest.raises(StorageError, match="corrupt"):
        await storage.read_allowlist()


@pytest.mark.asyncio
async def test_sqlite_undecodable_value_raises_storage_error(tmp_path):
    with SqliteBackend(tmp_path / "store.db") as backend:
        backend._conn.execute("INSERT INTO kv (key, value) VALUES (?, ?)", ("stats:default", "{not json"))
        backend._conn.commit()
        with pytest.raises(StorageError):
            await EngineStorage(backend).read_stats()


def test_sqlite_get_info(tmp_path):
    with SqliteBackend(tmp_path / "store.db", quota_bytes=1000) as backend:
        backend._set_sync({"allowlist:default": ["a@x.com"]})
        info = backend.get_info()
    assert info["key_count"] == 1
    assert info["quota"] == 1000
    assert info["db_file_size"] > 0
