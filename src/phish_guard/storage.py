"""Key-value persistence backends and the engine's view of them."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
import sqlite3
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Protocol

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .allowlist import fingerprint_emails
from .constants import (
    DEFAULT_ACCOUNT_ID,
    MAX_PAYLOAD_BYTES,
    READ_RETRY_ATTEMPTS,
    STATS_FORMAT_VERSION,
    STORAGE_QUOTA_BYTES,
    STORE_DB_PATH,
)
from .errors import PayloadTooLargeError, StorageError
from .locking import FailureTracker, PersistenceLock, WriteClass
from .models import PersistentStats, StatsSnapshot

logger = logging.getLogger(__name__)

_ACCOUNT_URL_PATTERNS = [
    re.compile(r"mail\.google\.com/mail/u/(\d+)(?:/|#|\?|$)"),
    re.compile(r"inbox\.google\.com/u/(\d+)(?:/|#|\?|$)"),
    re.compile(r"mail\.google\.com/u/(\d+)(?:/|#|\?|$)"),
]

# Errors a backend may surface that count as a failed call.
_BACKEND_ERRORS = (StorageError, OSError, asyncio.TimeoutError)


def resolve_account_id(value: str | None) -> str:
    """Turn a Gmail URL or plain identifier into a storage account id.

    "https://mail.google.com/mail/u/1/#inbox" -> "u_1"; other URLs fall back
    to the default account.
    """
    if not value or not value.strip():
        return DEFAULT_ACCOUNT_ID
    value = value.strip()
    if "://" in value or "google.com" in value:
        for pattern in _ACCOUNT_URL_PATTERNS:
            m = pattern.search(value)
            if m:
                return f"u_{m.group(1)}"
        return DEFAULT_ACCOUNT_ID
    return value


def payload_size(data: object) -> int:
    return len(json.dumps(data))


def validate_payload_size(data: object, max_size: int = MAX_PAYLOAD_BYTES) -> int:
    """Raise PayloadTooLargeError if the JSON encoding of ``data`` is too big."""
    size = payload_size(data)
    if size > max_size:
        raise PayloadTooLargeError(size, max_size)
    return size


class StorageBackend(Protocol):
    """Asynchronous key-value store the engine persists into."""

    async def get(self, keys: Iterable[str]) -> dict: ...

    async def set(self, mapping: dict) -> None: ...

    def is_available(self) -> bool: ...


# --- backends ---


class MemoryBackend:
    """In-process backend. Failures can be injected for testing."""

    def __init__(self, data: dict | None = None, quota_bytes: int = STORAGE_QUOTA_BYTES) -> None:
        self.data: dict = copy.deepcopy(data or {})
        self.quota_bytes = quota_bytes
        self.available = True
        self.fail_reads = False
        self.fail_writes = False
        self.read_attempts = 0
        self.write_attempts = 0
        self.writes: list[dict] = []

    def is_available(self) -> bool:
        return self.available

    async def get(self, keys: Iterable[str]) -> dict:
        await asyncio.sleep(0)
        self.read_attempts += 1
        if not self.available or self.fail_reads:
            raise StorageError("Storage get failed: backend unavailable")
        return {k: copy.deepcopy(self.data[k]) for k in keys if k in self.data}

    async def set(self, mapping: dict) -> None:
        await asyncio.sleep(0)
        self.write_attempts += 1
        if not self.available or self.fail_writes:
            raise StorageError("Storage set failed: backend unavailable")
        merged = {**self.data, **mapping}
        if payload_size(merged) > self.quota_bytes:
            raise StorageError("Storage set failed: quota exceeded")
        self.data.update(copy.deepcopy(mapping))
        self.writes.append(copy.deepcopy(mapping))


_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL
);
"""


class SqliteBackend:
    """Persistent backend storing JSON values in a single SQLite table.

    Blocking SQLite calls run in a worker thread. Callers serialize access
    through the persistence lock, so one connection is shared.
    """

    def __init__(self, db_path: Path | None = None, quota_bytes: int = STORAGE_QUOTA_BYTES) -> None:
        self.db_path = Path(db_path or STORE_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(self.db_path), check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_CREATE_TABLES_SQL)

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("SQLite backend is closed")
        return self._conn

    def is_available(self) -> bool:
        return self._conn is not None

    # --- sync implementation ---

    def _get_sync(self, keys: list[str]) -> dict:
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        try:
            rows = self._connection().execute(
                f"SELECT key, value FROM kv WHERE key IN ({placeholders})", keys
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Storage get failed: {exc}") from exc
        try:
            return {row["key"]: json.loads(row["value"]) for row in rows}
        except json.JSONDecodeError as exc:
            raise StorageError(f"Storage get failed: undecodable value: {exc}") from exc

    def _set_sync(self, mapping: dict) -> None:
        conn = self._connection()
        encoded = {key: json.dumps(value) for key, value in mapping.items()}
        if not encoded:
            return
        try:
            placeholders = ", ".join("?" for _ in encoded)
            others = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) AS used FROM kv "
                f"WHERE key NOT IN ({placeholders})",
                list(encoded),
            ).fetchone()["used"]
            incoming = sum(len(k) + len(v) for k, v in encoded.items())
            if others + incoming > self.quota_bytes:
                raise StorageError(
                    f"Storage set failed: quota exceeded ({others + incoming}/{self.quota_bytes} bytes)"
                )
            now = time.time()
            with conn:
                conn.executemany(
                    "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                    [(key, value, now) for key, value in encoded.items()],
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Storage set failed: {exc}") from exc

    # --- public API ---

    async def get(self, keys: Iterable[str]) -> dict:
        return await asyncio.to_thread(self._get_sync, list(keys))

    async def set(self, mapping: dict) -> None:
        await asyncio.to_thread(self._set_sync, dict(mapping))

    def bytes_in_use(self) -> int:
        return self._connection().execute(
            "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) AS used FROM kv"
        ).fetchone()["used"]

    def get_info(self) -> dict:
        """Return storage statistics."""
        file_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        key_count = self._connection().execute("SELECT COUNT(*) AS c FROM kv").fetchone()["c"]
        return {
            "db_file_size": file_size,
            "key_count": key_count,
            "bytes_in_use": self.bytes_in_use(),
            "quota": self.quota_bytes,
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # --- context manager ---

    def __enter__(self) -> SqliteBackend:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()


# --- stored payloads ---


def encode_stats_payload(snapshot: StatsSnapshot) -> dict:
    """Stored stats: the unified snapshot plus the flat fields older readers expect."""
    return {
        "version": STATS_FORMAT_VERSION,
        "unified": snapshot.to_dict(),
        "totalThreatsEverFound": snapshot.persistent.total_threats_ever,
        "emailsWhitelisted": snapshot.persistent.allowlisted,
        "totalEmailsScanned": snapshot.persistent.total_scanned_ever,
        "threatsIdentified": snapshot.session.threats,
        "lastUpdated": snapshot.persistent.last_updated,
    }


def decode_stats_payload(payload: dict) -> StatsSnapshot:
    if "unified" in payload:
        return StatsSnapshot.from_dict(payload["unified"])

    # Flat format written before session/persistent were split.
    logger.info("Migrating legacy stats format to session/persistent structure")
    return StatsSnapshot(
        persistent=PersistentStats(
            total_threats_ever=int(
                payload.get("totalThreatsEverFound", payload.get("threatsIdentified", 0))
            ),
            allowlisted=int(payload.get("emailsWhitelisted", 0)),
            total_scanned_ever=int(payload.get("totalEmailsScanned", 0)),
            last_updated=payload.get("lastUpdated", time.time()),
        )
    )


@retry(
    retry=retry_if_exception_type(_BACKEND_ERRORS),
    wait=wait_exponential(multiplier=0.05, max=1),
    stop=stop_after_attempt(READ_RETRY_ATTEMPTS),
    reraise=True,
)
async def _get_with_retry(backend: StorageBackend, keys: list[str]) -> dict:
    return await backend.get(keys)


async def _read_keys(backend: StorageBackend, keys: list[str]) -> dict:
    """Read ``keys``, reporting any backend fault as StorageError."""
    try:
        return await _get_with_retry(backend, keys)
    except StorageError:
        raise
    except _BACKEND_ERRORS as exc:
        raise StorageError(f"Storage get failed: {exc!r}") from exc


class SaveStatus(str, Enum):
    SAVED = "saved"
    UNCHANGED = "unchanged"  # nothing to write, counts as success
    SKIPPED = "skipped"  # circuit breaker open
    FAILED = "failed"
    TOO_LARGE = "too_large"

    @property
    def ok(self) -> bool:
        return self in (SaveStatus.SAVED, SaveStatus.UNCHANGED)


def _stats_fingerprint(snapshot: StatsSnapshot) -> tuple:
    return (
        snapshot.session.scanned,
        snapshot.session.threats,
        snapshot.persistent.total_threats_ever,
        snapshot.persistent.allowlisted,
        snapshot.persistent.total_scanned_ever,
    )


class EngineStorage:
    """Everything the engine reads from or writes to the backend.

    All backend calls go through ``lock``. ``write_*`` methods expect the
    caller to hold it already; ``save_*`` and ``read_*`` acquire it.
    """

    def __init__(
        self,
        backend: StorageBackend,
        account_id: str = DEFAULT_ACCOUNT_ID,
        lock: PersistenceLock | None = None,
        failures: FailureTracker | None = None,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.account_id = account_id
        self.lock = lock or PersistenceLock()
        self.failures = failures or FailureTracker()
        self.max_payload_bytes = max_payload_bytes
        self._clock = clock
        self._stats_baseline: tuple | None = None
        self._allowlist_baseline: str | None = None

    @property
    def stats_key(self) -> str:
        return f"stats:{self.account_id}"

    @property
    def allowlist_key(self) -> str:
        return f"allowlist:{self.account_id}"

    # --- change tracking ---

    def capture_baseline(self, snapshot: StatsSnapshot, allowlist_hash: str) -> None:
        """Remember what is already durable so unchanged data is not rewritten."""
        self._stats_baseline = _stats_fingerprint(snapshot)
        self._allowlist_baseline = allowlist_hash

    def stats_changed(self, snapshot: StatsSnapshot) -> bool:
        return self._stats_baseline is None or _stats_fingerprint(snapshot) != self._stats_baseline

    def allowlist_changed(self, emails: Iterable[str]) -> bool:
        return (
            self._allowlist_baseline is None
            or fingerprint_emails(emails) != self._allowlist_baseline
        )

    # --- reads ---

    async def read_stats(self) -> StatsSnapshot | None:
        async def _read() -> StatsSnapshot | None:
            result = await _read_keys(self.backend, [self.stats_key])
            payload = result.get(self.stats_key)
            if not payload:
                return None
            try:
                return decode_stats_payload(payload)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise StorageError(f"Stored stats for account {self.account_id} are corrupt: {exc!r}") from exc

        return await self.lock.run("read_stats", _read)

    async def read_allowlist(self) -> list[str] | None:
        async def _read() -> list[str] | None:
            result = await _read_keys(self.backend, [self.allowlist_key])
            emails = result.get(self.allowlist_key)
            if emails is None:
                return None
            if not isinstance(emails, list) or not all(isinstance(e, str) for e in emails):
                raise StorageError(f"Stored allow-list for account {self.account_id} is corrupt")
            return list(emails)

        return await self.lock.run("read_allowlist", _read)

    # --- writes (lock held by caller) ---

    async def _write(self, write_class: WriteClass, mapping: dict) -> SaveStatus:
        try:
            size = validate_payload_size(mapping, self.max_payload_bytes)
        except PayloadTooLargeError as exc:
            logger.error("Not saving %s for account %s: %s", write_class.value, self.account_id, exc)
            return SaveStatus.TOO_LARGE

        try:
            await self.backend.set(mapping)
        except Exception as exc:  # noqa: BLE001
            # Any backend fault is a failed save; callers keep their data.
            logger.error("Error saving %s for account %s: %s", write_class.value, self.account_id, exc)
            self.failures.record_failure(write_class)
            return SaveStatus.FAILED

        logger.debug("Saved %s for account %s (%d bytes)", write_class.value, self.account_id, size)
        self.failures.record_success(write_class)
        return SaveStatus.SAVED

    async def write_stats(self, snapshot: StatsSnapshot) -> SaveStatus:
        if not self.failures.allow(WriteClass.STATS, self.backend.is_available):
            return SaveStatus.SKIPPED
        if not self.stats_changed(snapshot):
            logger.debug("Skipping stats save - no meaningful changes detected")
            return SaveStatus.UNCHANGED

        snapshot.persistent.last_updated = self._clock()
        status = await self._write(WriteClass.STATS, {self.stats_key: encode_stats_payload(snapshot)})
        if status is SaveStatus.SAVED:
            self._stats_baseline = _stats_fingerprint(snapshot)
            logger.info(
                "Saved stats for account %s: %d emails this session, %d total threats",
                self.account_id,
                snapshot.session.scanned,
                snapshot.persistent.total_threats_ever,
            )
        return status

    async def write_allowlist(self, emails: list[str]) -> SaveStatus:
        if not self.failures.allow(WriteClass.ALLOWLIST, self.backend.is_available):
            return SaveStatus.SKIPPED
        if not self.allowlist_changed(emails):
            logger.debug("Skipping allow-list save - no changes detected")
            return SaveStatus.UNCHANGED

        status = await self._write(WriteClass.ALLOWLIST, {self.allowlist_key: sorted(emails)})
        if status is SaveStatus.SAVED:
            self._allowlist_baseline = fingerprint_emails(emails)
            logger.info("Saved allow-list with %d entries for account %s", len(emails), self.account_id)
        return status

    # --- locked writes ---

    async def save_stats(self, snapshot: StatsSnapshot) -> SaveStatus:
        return await self.lock.run("save_stats", lambda: self.write_stats(snapshot))

    async def save_allowlist(self, emails: list[str]) -> SaveStatus:
        return await self.lock.run("save_allowlist", lambda: self.write_allowlist(emails))
