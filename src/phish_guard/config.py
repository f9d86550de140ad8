"""Engine configuration."""

from __future__ import annotations

from dataclasses import dataclass

from .constants import (
    BATCH_SAVE_DELAY,
    CACHE_EXPIRY,
    CLEANUP_DELAY,
    FORCE_CLEANUP_THRESHOLD,
    IDLE_CHECK_INTERVAL,
    IDLE_SECONDS,
    MAX_ALLOWLIST_SIZE,
    MAX_BATCH_SIZE,
    MAX_CACHE_SIZE,
    MAX_PAYLOAD_BYTES,
    MAX_SAVE_FAILURES,
)


@dataclass(frozen=True)
class EngineConfig:
    """Limits and timings for one engine instance.

    Defaults come from :mod:`phish_guard.constants`; tests build smaller
    configs to keep timers short.
    """

    max_cache_size: int = MAX_CACHE_SIZE
    cache_expiry: float = CACHE_EXPIRY
    force_cleanup_threshold: int = FORCE_CLEANUP_THRESHOLD
    max_allowlist_size: int = MAX_ALLOWLIST_SIZE
    batch_save_delay: float = BATCH_SAVE_DELAY
    max_batch_size: int = MAX_BATCH_SIZE
    max_save_failures: int = MAX_SAVE_FAILURES
    max_payload_bytes: int = MAX_PAYLOAD_BYTES
    idle_seconds: float = IDLE_SECONDS
    idle_check_interval: float = IDLE_CHECK_INTERVAL
    cleanup_delay: float = CLEANUP_DELAY
