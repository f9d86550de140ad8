"""Exception hierarchy for Gmail Phish Guard."""


class PhishGuardError(Exception):
    """Base class for all errors raised by the engine."""


class StatsValidationError(PhishGuardError, ValueError):
    """Rejected counter update (unknown kind or negative amount)."""


class StorageError(PhishGuardError):
    """The persistence backend failed to read or write."""


class PayloadTooLargeError(StorageError):
    """A payload is larger than the backend accepts."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class AllowlistInvariantError(PhishGuardError, AssertionError):
    """The persistent allow-list counter disagrees with the allow-list."""
