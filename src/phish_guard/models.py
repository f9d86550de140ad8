"""Data models for Gmail Phish Guard."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum

from .constants import SUSPICION_THRESHOLD

# camelCase keys used by older record producers
_RECORD_KEY_ALIASES = {
    "threadId": "thread_id",
    "senderName": "sender_name",
    "senderEmail": "sender_email",
    "replyTo": "reply_to",
    "replyToAddress": "reply_to",
}


@dataclass(frozen=True)
class Record:
    """Visible metadata of one inbound message."""

    thread_id: str | None = None
    sender_name: str | None = None
    sender_email: str | None = None
    subject: str | None = None
    snippet: str | None = None
    body: str | None = None
    reply_to: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> Record:
        """Build a record from snake_case or camelCase keys, ignoring unknown ones."""
        fields = {}
        for key, value in data.items():
            name = _RECORD_KEY_ALIASES.get(key, key)
            if name in cls.__dataclass_fields__:
                fields[name] = value
        return cls(**fields)


class IndicatorKind(str, Enum):
    DISPLAY_NAME_MISMATCH = "display_name_mismatch"
    NO_SENDER_NAME = "no_sender_name"
    FINANCIAL_TERMS = "financial_terms"
    FINANCIAL_TERMS_SUBJECT = "financial_terms_subject"
    GENERIC_GREETING = "generic_greeting"
    URGENCY = "urgency_indicators"
    SUSPICIOUS_DOMAIN = "suspicious_domain"


@dataclass(frozen=True)
class Indicator:
    """One triggered heuristic."""

    kind: IndicatorKind
    weight: int
    detail: str
    description: str

    def __post_init__(self) -> None:
        if self.weight <= 0:
            raise ValueError(f"Indicator weight must be positive, got {self.weight}")


@dataclass(frozen=True)
class AnalysisResult:
    """Verdict for a single record."""

    score: int
    is_suspicious: bool
    indicators: tuple[Indicator, ...] = ()
    was_allowlisted: bool = False

    @classmethod
    def allowlisted(cls) -> AnalysisResult:
        return cls(score=0, is_suspicious=False, indicators=(), was_allowlisted=True)

    @classmethod
    def from_indicators(cls, indicators: list[Indicator]) -> AnalysisResult:
        score = sum(i.weight for i in indicators)
        return cls(
            score=score,
            is_suspicious=score >= SUSPICION_THRESHOLD,
            indicators=tuple(indicators),
        )


@dataclass
class CacheEntry:
    thread_id: str
    result: AnalysisResult
    record: Record
    created_at: float


@dataclass
class SessionStats:
    """Counters that start from zero on every load."""

    scanned: int = 0
    threats: int = 0
    session_start: float = field(default_factory=time.time)


@dataclass
class PersistentStats:
    """Cumulative counters that survive restarts."""

    total_threats_ever: int = 0
    allowlisted: int = 0
    total_scanned_ever: int = 0
    last_updated: float = field(default_factory=time.time)


@dataclass
class StatsSnapshot:
    session: SessionStats = field(default_factory=SessionStats)
    persistent: PersistentStats = field(default_factory=PersistentStats)

    def copy(self) -> StatsSnapshot:
        return StatsSnapshot(session=replace(self.session), persistent=replace(self.persistent))

    def legacy_view(self) -> dict:
        """Flat view for consumers of the old stats format."""
        return {
            "scanned": self.session.scanned,
            "threats": self.session.threats,
            "allowlisted": self.persistent.allowlisted,
            "last_updated": self.persistent.last_updated,
        }

    def to_dict(self) -> dict:
        return {
            "session": {
                "scanned": self.session.scanned,
                "threats": self.session.threats,
                "sessionStart": self.session.session_start,
            },
            "persistent": {
                "totalThreatsEver": self.persistent.total_threats_ever,
                "allowlisted": self.persistent.allowlisted,
                "totalScannedEver": self.persistent.total_scanned_ever,
                "lastUpdated": self.persistent.last_updated,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> StatsSnapshot:
        session = data.get("session", {})
        persistent = data.get("persistent", {})
        return cls(
            session=SessionStats(
                scanned=int(session.get("scanned", 0)),
                threats=int(session.get("threats", 0)),
                session_start=session.get("sessionStart", time.time()),
            ),
            persistent=PersistentStats(
                total_threats_ever=int(persistent.get("totalThreatsEver", 0)),
                allowlisted=int(persistent.get("allowlisted", 0)),
                total_scanned_ever=int(persistent.get("totalScannedEver", 0)),
                last_updated=persistent.get("lastUpdated", time.time()),
            ),
        )


@dataclass
class PendingBatch:
    """Counter increments not yet written to the backend."""

    scanned: int = 0
    threats: int = 0
    allowlisted: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def total(self) -> int:
        return self.scanned + self.threats + self.allowlisted

    def is_empty(self) -> bool:
        return self.total == 0

    def add(self, kind: str, n: int, now: float) -> None:
        setattr(self, kind, getattr(self, kind) + n)
        self.timestamp = now

    def drain(self, now: float) -> PendingBatch:
        """Return the current increments and reset to zero."""
        taken = replace(self)
        self.scanned = 0
        self.threats = 0
        self.allowlisted = 0
        self.timestamp = now
        return taken

    def restore(self, batch: PendingBatch) -> None:
        """Add a drained batch back after a failed write."""
        self.scanned += batch.scanned
        self.threats += batch.threats
        self.allowlisted += batch.allowlisted


@dataclass
class ScanSummary:
    """Report produced when a scan goes idle."""

    records_scanned: int
    threats_found: int
    started_at: float
    ended_at: float
    session_scanned: int = 0
    session_threats: int = 0
    total_threats_ever: int = 0

    @property
    def duration(self) -> float:
        return max(0.0, self.ended_at - self.started_at)


@dataclass
class Observation:
    is_new: bool


@dataclass
class ProcessedRecord:
    """What the engine decided for one observed record."""

    record: Record
    result: AnalysisResult
    is_new: bool
    from_cache: bool = False
    suppressed: bool = False  # cached threat whose sender is now allow-listed
