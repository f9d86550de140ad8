"""Best-effort notifications to other processes."""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

STATS_UPDATED = "stats_updated"
ALLOWLIST_UPDATED = "allowlist_updated"
SCAN_COMPLETE = "scan_complete"


class NotificationSink(Protocol):
    async def notify(self, event: str, payload: dict) -> None: ...


class LoggingNotificationSink:
    """Sink that only logs; used when nothing is listening."""

    async def notify(self, event: str, payload: dict) -> None:
        logger.info("Notification %s: %s", event, payload)
