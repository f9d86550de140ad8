"""Capacity-bounded set of trusted sender addresses."""

from __future__ import annotations

import logging
from typing import Iterable

from .constants import MAX_ALLOWLIST_SIZE

logger = logging.getLogger(__name__)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def fingerprint_emails(emails: Iterable[str]) -> str:
    """Order-independent fingerprint of a set of addresses."""
    return "|".join(sorted(emails))


class Allowlist:
    """Lower-cased sender addresses exempted from scoring."""

    def __init__(self, max_size: int = MAX_ALLOWLIST_SIZE) -> None:
        self.max_size = max_size
        self._emails: set[str] = set()

    def __len__(self) -> int:
        return len(self._emails)

    def __contains__(self, email: object) -> bool:
        return isinstance(email, str) and self.contains(email)

    def contains(self, email: str | None) -> bool:
        key = normalize_email(email)
        return bool(key) and key in self._emails

    def size(self) -> int:
        return len(self._emails)

    def is_full(self) -> bool:
        return len(self._emails) >= self.max_size

    def add(self, email: str | None) -> bool:
        """Add an address. Already-present addresses succeed without change."""
        key = normalize_email(email)
        if not key:
            return False
        if key in self._emails:
            return True
        if self.is_full():
            logger.warning("Cannot add %s to allow-list - limit of %d reached", key, self.max_size)
            return False
        self._emails.add(key)
        return True

    def remove(self, email: str | None) -> bool:
        key = normalize_email(email)
        if not key or key not in self._emails:
            return False
        self._emails.remove(key)
        return True

    def all(self) -> list[str]:
        return sorted(self._emails)

    def replace(self, emails: Iterable[str]) -> int:
        """Load addresses from storage, keeping at most ``max_size``. Returns the new size."""
        self._emails.clear()
        for email in emails:
            if self.is_full():
                logger.warning("Stored allow-list exceeds %d entries, truncating", self.max_size)
                break
            key = normalize_email(email)
            if key:
                self._emails.add(key)
        return len(self._emails)

    def content_hash(self) -> str:
        """Order-independent fingerprint used for change detection."""
        return fingerprint_emails(self._emails)
