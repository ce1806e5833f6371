"""
Status channel for a sync session.

Publishes human-readable phase messages ("Connecting...", "Loading INBOX...")
to any number of consumers; the latest status is always available.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class SyncStatus:
    message: str
    is_error: bool = False
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StatusChannel:
    """asyncio.Queue-backed status feed. Oldest entries are dropped when full."""

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.latest = SyncStatus("Idle")

    def publish(self, message: str, is_error: bool = False) -> SyncStatus:
        status = SyncStatus(message=message, is_error=is_error)
        self.latest = status
        if is_error:
            logger.warning(f"Status: {message}")
        else:
            logger.debug(f"Status: {message}")

        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(status)
        return status

    async def get(self) -> SyncStatus:
        return await self._queue.get()

    def get_nowait(self) -> Optional[SyncStatus]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def updates(self) -> AsyncIterator[SyncStatus]:
        while True:
            yield await self._queue.get()
