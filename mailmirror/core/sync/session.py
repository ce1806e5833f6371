"""
Sync session - the caller-facing facade.

Wires the connection manager, page loader, backfill loop, embedding loop,
repository and hybrid search together for one account:

    session = SyncSession(get_session_factory())
    await session.start_sync(account, password)
    page = await session.load_newest_page("INBOX")
    results = await session.search("invoice", mode="auto")
    await session.shutdown()

All database work runs in worker threads with a fresh session per unit of
work. Foreground calls publish their phase on the status channel and the
last failed call can be re-run with retry().
"""
import asyncio
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from mailmirror.core.config import Settings, get_settings
from mailmirror.core.database.models import EMBEDDING_DIMENSION
from mailmirror.core.database.repository import MailRepository
from mailmirror.core.email.connection_manager import ConnectionManager, NotConnectedError
from mailmirror.core.email.html_sanitizer import BlockedResource, sanitize_html
from mailmirror.core.email.models import AccountSettings, FolderInfo, MessageSummary, Page
from mailmirror.core.email.page_loader import FolderPageLoader
from mailmirror.core.search.embeddings import EmbeddingBatcher
from mailmirror.core.search.hybrid_search import HybridSearch, SearchMode, SearchResult
from mailmirror.core.search.runtime import EmbeddingRuntime, OnnxEmbeddingRuntime
from mailmirror.core.storage.blob_store import BlobStore
from .backfill import BackfillLoop
from .embedding_loop import EmbeddingLoop
from .status import StatusChannel, SyncStatus

logger = logging.getLogger(__name__)


@dataclass
class MessageBodyView:
    """Renderable body plus the header summary shown above it"""
    folder: str
    uid: int
    html: str
    subject: str
    from_display: str
    from_address: str
    received: Optional[datetime]
    to: str = ""
    cc: Optional[str] = None
    bcc: Optional[str] = None
    blocked_resources: List[BlockedResource] = field(default_factory=list)


@dataclass
class AttachmentInfo:
    file_name: str
    content_type: str
    disposition: Optional[str]
    size_bytes: int
    sha256: str
    storage_key: str
    data: Optional[bytes] = None


@dataclass
class AccountInfo:
    id: int
    display_name: str
    server: str
    username: str
    last_synced_at: Optional[datetime]


def header_values(headers: Optional[Dict[str, List[str]]], name: str) -> Optional[str]:
    """Join every value of a header (case-insensitive name) with ", "."""
    values = []
    for key, entries in (headers or {}).items():
        if key.lower() == name.lower():
            values.extend(value.strip() for value in entries if value and value.strip())
    return ", ".join(values) if values else None


def plain_text_html(text: Optional[str]) -> str:
    return f"<html><body><pre>{html.escape(text or '')}</pre></body></html>"


class SyncSession:
    """Mirror, backfill, embed and search one IMAP account"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        runtime: Optional[EmbeddingRuntime] = None,
        blob_store: Optional[BlobStore] = None,
        connection: Optional[ConnectionManager] = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker for the mirror database
            settings: Defaults to get_settings()
            runtime: Embedding runtime; defaults to the ONNX runtime from settings
            blob_store: Attachment store; defaults to settings.blob_store_dir
            connection: Connection manager (mainly for tests)
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.connection = connection or ConnectionManager(timeout=self.settings.imap_timeout)
        self.page_loader = FolderPageLoader(
            self.connection,
            persist=self._persist_summaries,
            page_size=self.settings.page_size,
        )
        self.blob_store = blob_store or BlobStore(self.settings.blob_store_dir)

        if runtime is None:
            runtime = OnnxEmbeddingRuntime(
                model_id=self.settings.embedding_model_id,
                model_file=self.settings.embedding_model_file,
                dimension=EMBEDDING_DIMENSION,
                cache_dir=self.settings.embedding_cache_dir,
            )
        self.batcher = EmbeddingBatcher(
            runtime,
            max_seq_len=self.settings.embedding_max_seq_len,
            token_budget=self.settings.embedding_token_budget,
        )

        self.status_channel = StatusChannel()
        self.account: Optional[AccountSettings] = None
        self.account_id: Optional[int] = None
        self.backfill: Optional[BackfillLoop] = None
        self.embedding_loop: Optional[EmbeddingLoop] = None
        self._tasks: List[asyncio.Task] = []
        self._last_failed: Optional[Callable[[], Awaitable[Any]]] = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self.status_channel.latest

    def status_updates(self) -> AsyncIterator[SyncStatus]:
        return self.status_channel.updates()

    def _status(self, message: str, is_error: bool = False) -> None:
        self.status_channel.publish(message, is_error=is_error)

    async def _tracked(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await operation()
        except Exception as e:
            self._last_failed = operation
            self._status(str(e) or type(e).__name__, is_error=True)
            raise
        self._last_failed = None
        return result

    async def retry(self) -> Any:
        """Re-run the last failed foreground operation (no-op if none failed)."""
        if self._last_failed is None:
            return None
        return await self._tracked(self._last_failed)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_sync(self, account: AccountSettings, password: str) -> List[FolderInfo]:
        """
        Connect, record the account and its folders, and start the
        background backfill and embedding loops.

        Returns:
            Folders with INBOX first
        """
        async def operation():
            if self._tasks:
                raise RuntimeError("Sync already started")
            folders = await self._connect(account, password)
            self._start_loops()
            return folders

        return await self._tracked(operation)

    async def connect(self, account: AccountSettings, password: str) -> List[FolderInfo]:
        """Connect and record the account without starting the background loops."""
        return await self._tracked(lambda: self._connect(account, password))

    async def _connect(self, account: AccountSettings, password: str) -> List[FolderInfo]:
        self._status(f"Connecting to {account.server}...")
        folders = await self.connection.connect(account, password)
        self.account = account
        self.account_id = await asyncio.to_thread(self._register_account, account, folders)
        self._status(f"Connected as {account.label}")
        return folders

    def _register_account(self, account: AccountSettings, folders: List[FolderInfo]) -> int:
        with self.session_factory() as db:
            repo = MailRepository(db)
            row = repo.get_or_create_account(account)
            repo.upsert_folders(row.id, folders)
            repo.mark_account_synced(row.id)
            return row.id

    def _start_loops(self) -> None:
        self._build_loops()
        self._tasks = [
            asyncio.create_task(self.backfill.run(), name="backfill"),
            asyncio.create_task(self.embedding_loop.run(), name="embedding"),
        ]

    def _build_loops(self) -> None:
        self.backfill = BackfillLoop(
            self.connection,
            self.session_factory,
            self.account_id,
            blob_store=self.blob_store,
            server=self.account.server,
            interval=self.settings.backfill_interval_seconds,
        )
        self.embedding_loop = EmbeddingLoop(
            self.batcher,
            self.session_factory,
            batch_cap=self.settings.embedding_batch_cap,
            idle_interval=self.settings.embedding_idle_interval_seconds,
            active_interval=self.settings.embedding_active_interval_seconds,
            on_error=lambda message: self._status(message, is_error=True),
        )

    async def backfill_once(self, folder: Optional[str] = None, uid: Optional[int] = None):
        """Single backfill pass (requires connect()); see BackfillLoop.run_once."""
        if self.account_id is None:
            raise NotConnectedError("Call connect() before backfilling")
        if self.backfill is None:
            self._build_loops()
        return await self.backfill.run_once(folder=folder, uid=uid)

    async def embed_once(self) -> int:
        """Embed one batch of pending messages; needs no IMAP connection."""
        loop = self.embedding_loop or EmbeddingLoop(
            self.batcher, self.session_factory, batch_cap=self.settings.embedding_batch_cap,
        )
        return await loop.run_once()

    async def shutdown(self) -> None:
        """Stop and join both loops, flush pending writes, log out."""
        self._status("Shutting down...")
        if self.backfill:
            self.backfill.stop()
        if self.embedding_loop:
            self.embedding_loop.stop()
        if self._tasks:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for task, result in zip(self._tasks, results):
                if isinstance(result, Exception):
                    logger.error(f"{task.get_name()} loop ended with error: {result}")
            self._tasks = []

        await self.page_loader.drain()
        await self.connection.disconnect()
        self._status("Disconnected")

    # ------------------------------------------------------------------
    # Folder pages
    # ------------------------------------------------------------------

    async def load_newest_page(self, folder: str) -> Page:
        async def operation():
            self._status(f"Loading {folder}...")
            page = await self.page_loader.load_newest(folder)
            self._status(f"Loaded {len(page.messages)} message(s) from {folder}")
            return page

        return await self._tracked(operation)

    async def load_older_page(self, folder: str) -> Page:
        async def operation():
            self._status(f"Loading older messages in {folder}...")
            page = await self.page_loader.load_older(folder)
            self._status(f"Loaded {len(page.messages)} message(s) from {folder}")
            return page

        return await self._tracked(operation)

    async def _persist_summaries(self, folder: str, summaries: List[MessageSummary]) -> int:
        return await asyncio.to_thread(self._store_summaries, folder, summaries)

    def _store_summaries(self, folder: str, summaries: List[MessageSummary]) -> int:
        if self.account_id is None:
            return 0
        with self.session_factory() as db:
            repo = MailRepository(db)
            row = repo.get_folder(self.account_id, folder)
            if row is None:
                info = self.connection.folders.get(folder) or FolderInfo(full_name=folder, display_name=folder)
                row = repo.upsert_folders(self.account_id, [info])[folder]
            server = self.account.server if self.account else None
            created = repo.insert_new_summaries(row.id, summaries, server)
        if created:
            logger.debug(f"Recorded {created} new summary row(s) for {folder}")
        return created

    # ------------------------------------------------------------------
    # Search and bodies
    # ------------------------------------------------------------------

    async def search(self, query: str, mode: str = "auto",
                     since_utc: Optional[datetime] = None,
                     cursor: Optional[int] = None) -> List[SearchResult]:
        """
        Hybrid search over the mirror.

        Args:
            query: Free text, an address or a name; empty lists recent mail
            mode: auto, subject, sender, content or all
            since_utc: Only messages received at or after this time
            cursor: Only messages with a UID below this value

        Returns:
            Up to max_search_results results, best first
        """
        async def operation():
            self._status("Searching...")
            failures: List[str] = []

            def embed_query(text: str):
                try:
                    return self.batcher.embed_query(text)
                except Exception as e:
                    failures.append(str(e))
                    raise

            def run() -> List[SearchResult]:
                with self.session_factory() as db:
                    return HybridSearch(db, embed_query, limit=self.settings.max_search_results).search(
                        query, SearchMode(mode), since=since_utc, cursor=cursor, account_id=self.account_id,
                    )

            results = await asyncio.to_thread(run)
            if failures:
                self._status(f"Semantic search unavailable: {failures[0]}", is_error=True)
            else:
                self._status(f"{len(results)} result(s)")
            return results

        return await self._tracked(operation)

    async def load_body(self, folder: str, uid: int) -> MessageBodyView:
        """
        Sanitized body and header summary of a mirrored message.

        Raises:
            MessageNotFoundError: (folder, uid) is not mirrored
        """
        return await asyncio.to_thread(self._load_body, folder, uid)

    def _load_body(self, folder: str, uid: int) -> MessageBodyView:
        with self.session_factory() as db:
            repo = MailRepository(db)
            message = repo.find_message(self.account_id, folder, uid)
            body = repo.get_body(message.id)

            blocked: List[BlockedResource] = []
            if body is not None and body.html_text:
                sanitized = sanitize_html(body.html_text)
                blocked = sanitized.blocked_resources
                content = body.sanitized_html or sanitized.html
            elif body is not None and body.sanitized_html:
                content = body.sanitized_html
            else:
                content = plain_text_html(body.plain_text if body is not None else "")

            name, address = message.from_name, message.from_address
            headers = body.headers if body is not None else None
            return MessageBodyView(
                folder=folder,
                uid=uid,
                html=content,
                subject=message.subject or "(No subject)",
                from_display=f"{name} <{address}>" if name and address else (address or name or ""),
                from_address=address or "",
                received=message.received_utc,
                to=header_values(headers, "To") or "",
                cc=header_values(headers, "Cc"),
                bcc=header_values(headers, "Bcc"),
                blocked_resources=blocked,
            )

    # ------------------------------------------------------------------
    # Folders and attachments
    # ------------------------------------------------------------------

    async def list_folders(self) -> List[FolderInfo]:
        """Live folder list when connected, otherwise the mirrored folders."""
        if self.connection.folders:
            return list(self.connection.folders.values())
        return await asyncio.to_thread(self._stored_folders)

    def _stored_folders(self) -> List[FolderInfo]:
        with self.session_factory() as db:
            return [
                FolderInfo(full_name=row.full_name, display_name=row.display_name or row.full_name,
                           uid_validity=row.uid_validity)
                for row in MailRepository(db).list_folders(self.account_id)
            ]

    async def list_attachments(self, folder: str, uid: int,
                               content_type_prefix: Optional[str] = None,
                               include_data: bool = False,
                               max_bytes: Optional[int] = None) -> List[AttachmentInfo]:
        """
        Attachments stored for a mirrored message.

        Args:
            content_type_prefix: Only attachments whose type starts with this (e.g. "image/")
            include_data: Read the bytes from the blob store
            max_bytes: With include_data, read at most this many bytes per attachment

        Raises:
            MessageNotFoundError: (folder, uid) is not mirrored
        """
        return await asyncio.to_thread(
            self._list_attachments, folder, uid, content_type_prefix, include_data, max_bytes,
        )

    def _list_attachments(self, folder: str, uid: int, content_type_prefix: Optional[str],
                          include_data: bool, max_bytes: Optional[int]) -> List[AttachmentInfo]:
        with self.session_factory() as db:
            repo = MailRepository(db)
            message = repo.find_message(self.account_id, folder, uid)
            attachments = [
                AttachmentInfo(
                    file_name=row.file_name,
                    content_type=row.content_type,
                    disposition=row.disposition,
                    size_bytes=row.size_bytes,
                    sha256=row.hash,
                    storage_key=row.storage_key,
                )
                for row in repo.list_attachments(message.id, content_type_prefix)
            ]

        if include_data:
            for attachment in attachments:
                attachment.data = self._read_blob(attachment, max_bytes)
        return attachments

    def _read_blob(self, attachment: AttachmentInfo, max_bytes: Optional[int]) -> Optional[bytes]:
        try:
            with self.blob_store.open(attachment.storage_key) as stream:
                return stream.read(max_bytes) if max_bytes and max_bytes > 0 else stream.read()
        except FileNotFoundError:
            logger.warning(f"Blob {attachment.storage_key} for {attachment.file_name} is missing")
            return None

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def list_accounts(self) -> List[AccountInfo]:
        """Mirrored accounts (no secrets) ordered by display name."""
        return await asyncio.to_thread(self._list_accounts)

    def _list_accounts(self) -> List[AccountInfo]:
        with self.session_factory() as db:
            return [
                AccountInfo(
                    id=row.id,
                    display_name=row.display_name,
                    server=row.server,
                    username=row.username,
                    last_synced_at=row.last_synced_at,
                )
                for row in MailRepository(db).list_accounts()
            ]
