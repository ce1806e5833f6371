"""
Foreground pagination over one folder's message summaries.

Pages are windows of message sequence indices, newest first. The cursor for
a folder is the end index of the next older window and strictly decreases
from page to page, so successive pages never overlap. Cursors live only as
long as the connection: every (re)connect clears them.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from imapclient import IMAPClient

from .connection_manager import ConnectionManager, SelectedFolder
from .mime import decode_header_value
from .models import MessageSummary, Page

logger = logging.getLogger(__name__)

PAGE_SIZE = 40

FETCH_ITEMS = ['UID', 'ENVELOPE', 'INTERNALDATE']

PersistSummaries = Callable[[str, List[MessageSummary]], Awaitable[object]]


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    return decode_header_value(value)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    # Naive values from IMAPClient are local time
    return value.astimezone(timezone.utc)


def summary_from_fetch(data: dict) -> Optional[MessageSummary]:
    """Build a MessageSummary from one FETCH response entry."""
    uid = data.get(b'UID')
    if uid is None:
        return None

    envelope = data.get(b'ENVELOPE')
    subject = from_name = from_address = message_id = ""
    envelope_date = None
    if envelope is not None:
        subject = _text(envelope.subject)
        message_id = _text(envelope.message_id).strip()
        envelope_date = envelope.date if isinstance(envelope.date, datetime) else None
        if envelope.from_:
            sender = envelope.from_[0]
            from_name = _text(sender.name).strip().strip('"')
            mailbox, host = _text(sender.mailbox), _text(sender.host)
            if mailbox and host:
                from_address = f"{mailbox}@{host}"
            else:
                from_address = mailbox

    received = (
        _to_utc(data.get(b'INTERNALDATE'))
        or _to_utc(envelope_date)
        or datetime.now(timezone.utc)
    )
    return MessageSummary(
        uid=int(uid),
        subject=subject,
        from_name=from_name,
        from_address=from_address,
        received=received,
        message_id=message_id,
    )


def fetch_window(client: IMAPClient, start: int, end: int) -> List[MessageSummary]:
    """
    Fetch envelope summaries for zero-based sequence indices [start, end].
    """
    previous = client.use_uid
    client.use_uid = False
    try:
        response = client.fetch(f"{start + 1}:{end + 1}", FETCH_ITEMS)
    finally:
        client.use_uid = previous

    summaries = [summary_from_fetch(data) for data in response.values()]
    return [s for s in summaries if s is not None]


class FolderPageLoader:
    """
    Newest/older pagination for the UI path.

    Newly seen summaries are handed to the persist callback in a background
    task so the caller never waits on the database.
    """

    def __init__(self, connection: ConnectionManager,
                 persist: Optional[PersistSummaries] = None,
                 page_size: int = PAGE_SIZE):
        self.connection = connection
        self.page_size = page_size
        self._persist = persist
        self._cursors: Dict[str, int] = {}
        self._pending: Set[asyncio.Task] = set()
        connection.add_reconnect_listener(self.reset_cursors)

    def reset_cursors(self) -> None:
        if self._cursors:
            logger.debug(f"Clearing {len(self._cursors)} pagination cursor(s)")
        self._cursors.clear()

    def cursor(self, folder: str) -> Optional[int]:
        return self._cursors.get(folder)

    def _window(self, end: int) -> Tuple[int, int]:
        return max(0, end - self.page_size + 1), end

    async def load_newest(self, folder: str) -> Page:
        """
        Load the newest page of a folder and reset its cursor.

        Returns:
            Page sorted by received timestamp, newest first
        """
        def operation(client: IMAPClient, selected: SelectedFolder):
            if selected.exists == 0:
                return [], -1
            start, end = self._window(selected.exists - 1)
            return fetch_window(client, start, end), start

        summaries, start = await self.connection.call(folder, operation)
        return self._finish(folder, summaries, start)

    async def load_older(self, folder: str) -> Page:
        """
        Load the page just older than the last one returned for this folder.

        Returns:
            Empty page with has_more=False when there is nothing older
        """
        cursor = self._cursors.get(folder)
        if cursor is None or cursor < 0:
            return Page(folder=folder, messages=[], has_more=False)

        def operation(client: IMAPClient, selected: SelectedFolder):
            # Messages may have been expunged since the cursor was recorded
            end = min(cursor, selected.exists - 1)
            if end < 0:
                return [], -1
            start, end = self._window(end)
            return fetch_window(client, start, end), start

        summaries, start = await self.connection.call(folder, operation)
        return self._finish(folder, summaries, start)

    def _finish(self, folder: str, summaries: List[MessageSummary], start: int) -> Page:
        if start < 0:
            self._cursors[folder] = -1
            return Page(folder=folder, messages=[], has_more=False)

        self._cursors[folder] = start - 1
        summaries.sort(key=lambda s: s.received, reverse=True)
        self._schedule_persist(folder, summaries)
        return Page(folder=folder, messages=summaries, has_more=start > 0)

    def _schedule_persist(self, folder: str, summaries: List[MessageSummary]) -> None:
        if self._persist is None or not summaries:
            return
        task = asyncio.create_task(self._persist(folder, list(summaries)))
        self._pending.add(task)
        task.add_done_callback(self._persist_done)

    def _persist_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Failed to persist page summaries: {error}")

    async def drain(self) -> None:
        """Wait for outstanding summary writes (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
