"""Shared fixtures for tests."""

from __future__ import annotations

import pytest

from phish_guard.config import EngineConfig
from phish_guard.engine import PhishGuardEngine
from phish_guard.models import Record
from phish_guard.storage import MemoryBackend


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def config() -> EngineConfig:
    # Long batch delay so only explicit flushes write, unless a test shortens it.
    return EngineConfig(
        max_cache_size=10,
        cache_expiry=100,
        force_cleanup_threshold=15,
        max_allowlist_size=3,
        batch_save_delay=60.0,
        max_batch_size=50,
        idle_seconds=2.0,
        idle_check_interval=0.01,
        cleanup_delay=60.0,
    )


@pytest.fixture
def engine(backend: MemoryBackend, config: EngineConfig, clock: FakeClock, sink: RecordingSink) -> PhishGuardEngine:
    return PhishGuardEngine.create(backend, config=config, clock=clock, notifier=sink)


@pytest.fixture
def phishing_record() -> Record:
    return Record(
        thread_id="t_phish",
        sender_name="Microsoft Support",
        sender_email="support@gmail.com",
        subject="Urgent: Verify your account immediately",
        body="Your account is overdue. Click here to verify immediately.",
    )


@pytest.fixture
def clean_record() -> Record:
    return Record(
        thread_id="t_clean",
        sender_name="John Doe",
        sender_email="john@example.com",
        subject="Regular email",
        body="This is a regular email with no suspicious content.",
    )
