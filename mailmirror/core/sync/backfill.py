"""
Background backfill loop.

Walks every folder of the connected account and fetches the full message for
each UID that is either known locally without a body, or present on the
server but not mirrored at all. Newest UIDs go first. Each message is
persisted on its own, so a failure only costs that one message.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from imapclient import IMAPClient
from sqlalchemy.orm import Session

from mailmirror.core.database.repository import MailRepository
from mailmirror.core.email.connection_manager import ConnectionManager, SelectedFolder
from mailmirror.core.email.mime import parse_message
from mailmirror.core.email.models import FolderInfo
from mailmirror.core.storage.blob_store import BlobStore

logger = logging.getLogger(__name__)

BACKFILL_INTERVAL_SECONDS = 30.0

BODY_FETCH_ITEMS = ['BODY.PEEK[]', 'INTERNALDATE']


def order_folders(folders: Iterable[FolderInfo]) -> List[FolderInfo]:
    """INBOX first, trash-like folders last, everything else by name."""
    def rank(folder: FolderInfo) -> Tuple[int, str]:
        if folder.is_inbox:
            return 0, folder.full_name
        if folder.is_trash:
            return 2, folder.full_name
        return 1, folder.full_name
    return sorted(folders, key=rank)


def fetch_targets(known: Dict[int, bool], server_uids: Iterable[int]) -> List[int]:
    """
    UIDs to fetch: known without a body, plus on the server but unknown.

    Args:
        known: UID -> has body, for the locally mirrored messages
        server_uids: UIDs reported by SEARCH ALL

    Returns:
        Deduplicated UIDs, highest first
    """
    missing_body = {uid for uid, has_body in known.items() if not has_body}
    unknown = {int(uid) for uid in server_uids if int(uid) not in known}
    return sorted(missing_body | unknown, reverse=True)


@dataclass
class BackfillStats:
    folders: int = 0
    fetched: int = 0
    stored: int = 0
    failed: int = 0


class BackfillLoop:
    """
    Fills in bodies and attachments in the background for one account.

    Runs until stop() is called; waits `interval` seconds between cycles,
    also after a failed cycle.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        session_factory: Callable[[], Session],
        account_id: int,
        blob_store: Optional[BlobStore] = None,
        server: Optional[str] = None,
        interval: float = BACKFILL_INTERVAL_SECONDS,
    ):
        self.connection = connection
        self.session_factory = session_factory
        self.account_id = account_id
        self.blob_store = blob_store
        self.server = server
        self.interval = interval
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        logger.info(f"Backfill loop started (interval: {self.interval}s)")
        while not self._stop.is_set():
            try:
                stats = await self.run_once()
                if stats.fetched:
                    logger.info(
                        f"Backfill cycle: {stats.stored}/{stats.fetched} message(s) stored "
                        f"across {stats.folders} folder(s), {stats.failed} failed"
                    )
            except Exception as e:
                logger.error(f"Backfill cycle failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Backfill loop stopped")

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_once(self, folder: Optional[str] = None, uid: Optional[int] = None) -> BackfillStats:
        """
        Run a single backfill pass.

        Args:
            folder: Only this folder (full name)
            uid: Only this UID (fetched even if already complete)

        Returns:
            BackfillStats for the pass
        """
        folders = order_folders(self.connection.folders.values())
        if folder is not None:
            folders = [f for f in folders if f.full_name == folder]
            if not folders:
                logger.warning(f"Folder '{folder}' is not on the server")

        folder_ids = await asyncio.to_thread(self._folder_ids, folders)
        stats = BackfillStats()
        for info in folders:
            if self._stop.is_set():
                break
            await self._backfill_folder(info.full_name, folder_ids[info.full_name], uid, stats)
            stats.folders += 1
        return stats

    def _folder_ids(self, folders: List[FolderInfo]) -> Dict[str, int]:
        with self.session_factory() as db:
            rows = MailRepository(db).upsert_folders(self.account_id, folders)
            return {name: row.id for name, row in rows.items()}

    def _known_uids(self, folder_id: int) -> Dict[int, bool]:
        with self.session_factory() as db:
            return MailRepository(db).known_uids(folder_id)

    def _update_hints(self, folder_id: int, uid_validity: Optional[int], last_uid: Optional[int]) -> None:
        with self.session_factory() as db:
            MailRepository(db).update_folder_hints(folder_id, uid_validity, last_uid)

    async def _backfill_folder(self, folder: str, folder_id: int, only_uid: Optional[int],
                               stats: BackfillStats) -> None:
        known = await asyncio.to_thread(self._known_uids, folder_id)

        def search_all(client: IMAPClient, selected: SelectedFolder):
            return [int(u) for u in client.search(['ALL'])], selected.uid_validity

        server_uids, uid_validity = await self.connection.call(folder, search_all)

        if only_uid is not None:
            targets = [only_uid] if only_uid in server_uids else []
        else:
            targets = fetch_targets(known, server_uids)

        if targets:
            logger.info(f"Backfilling {len(targets)} message(s) in {folder}")

        for uid in targets:
            if self._stop.is_set():
                return
            stats.fetched += 1
            try:
                raw, internal_date = await self.connection.call(folder, self._fetch_one(uid))
                if raw is None:
                    logger.warning(f"UID {uid} in {folder} vanished before it could be fetched")
                    stats.failed += 1
                    continue
                await asyncio.to_thread(self._persist, folder_id, uid, raw, internal_date)
                stats.stored += 1
            except Exception as e:
                # Connection loss ends the cycle; anything else skips the message
                if not self.connection.is_ready:
                    raise
                logger.error(f"Failed to backfill UID {uid} in {folder}: {e}")
                stats.failed += 1

        await asyncio.to_thread(
            self._update_hints, folder_id, uid_validity, max(server_uids) if server_uids else None
        )

    @staticmethod
    def _fetch_one(uid: int):
        def operation(client: IMAPClient, selected: SelectedFolder):
            response = client.fetch([uid], BODY_FETCH_ITEMS)
            data = response.get(uid)
            if not data:
                return None, None
            return data.get(b'BODY[]'), data.get(b'INTERNALDATE')
        return operation

    def _persist(self, folder_id: int, uid: int, raw: bytes, internal_date: Optional[datetime]) -> None:
        received = internal_date.astimezone(timezone.utc) if internal_date else None
        parsed = parse_message(raw, uid, received_fallback=received)
        with self.session_factory() as db:
            repo = MailRepository(db)
            message = repo.upsert_parsed_message(folder_id, uid, parsed, self.server)
            body_created, attachments = repo.store_content(message, parsed, self.blob_store)
        logger.debug(
            f"Stored UID {uid} (body: {'new' if body_created else 'existing'}, attachments: {attachments})"
        )
