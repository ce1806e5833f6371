"""
Database Repository - idempotent, race-tolerant writes for the sync engine.

Every write path here tolerates a concurrent writer creating the same row
first: unique-key violations are recovered by rolling back, re-reading the
existing row and updating it. Nothing is ever surfaced as a failure for a
lost race.
"""
from typing import Optional, List, Dict, Iterable, Tuple, Sequence
from datetime import datetime, timezone
from sqlalchemy.orm import Session
from sqlalchemy import select, exists, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
import logging

import numpy as np

from .models import (
    ImapAccount, ImapFolder, ImapMessage, MessageBody, MessageAttachment,
    MessageEmbedding,
)
from mailmirror.core.email.models import AccountSettings, FolderInfo, MessageSummary
from mailmirror.core.email.mime import ParsedMessage
from mailmirror.core.email.text_cleaner import clean_text
from mailmirror.core.storage.blob_store import BlobStore

logger = logging.getLogger(__name__)


class MessageNotFoundError(LookupError):
    """No mirrored message for the given folder/UID"""


def sanitize_for_postgres(text: Optional[str], field_name: str = "text", max_length: Optional[int] = None) -> Optional[str]:
    """
    Remove NUL bytes and unpaired surrogates, and enforce a length limit.

    Args:
        text: Input text
        field_name: Name of field being sanitized (for logging)
        max_length: Maximum length for field (truncates if longer)

    Returns:
        Sanitized text safe for PostgreSQL, or None if input was None
    """
    if text is None:
        return None

    sanitized = clean_text(text)
    if max_length and len(sanitized) > max_length:
        logger.debug(f"Truncated {field_name} from {len(sanitized)} to {max_length} characters")
        sanitized = sanitized[:max_length]
    return sanitized


def synthetic_message_id(uid: int, server: Optional[str]) -> str:
    return f"uid:{uid}@{server or 'localhost'}"


class MailRepository:
    """
    Repository pattern for mirror database operations.
    One instance per unit of work; callers own the session lifecycle.
    """

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy session
        """
        self.db = db

    # ------------------------------------------------------------------
    # Accounts and folders
    # ------------------------------------------------------------------

    def get_or_create_account(self, account: AccountSettings) -> ImapAccount:
        """Find the account row by (server, username), creating it if needed."""
        def find():
            return self.db.execute(
                select(ImapAccount).where(
                    ImapAccount.server == account.server,
                    ImapAccount.username == account.username,
                )
            ).scalar_one_or_none()

        row = find()
        if row is None:
            row = ImapAccount(
                server=account.server,
                username=account.username,
                port=account.port,
                use_ssl=account.use_ssl,
                display_name=account.label,
            )
            self.db.add(row)
            try:
                self.db.commit()
                logger.info(f"Created account {account.username}@{account.server}")
                return row
            except IntegrityError:
                self.db.rollback()
                row = find()

        row.port = account.port
        row.use_ssl = account.use_ssl
        row.display_name = account.label
        self.db.commit()
        return row

    def list_accounts(self, limit: int = 200) -> List[ImapAccount]:
        return list(self.db.execute(
            select(ImapAccount).order_by(ImapAccount.display_name, ImapAccount.username).limit(limit)
        ).scalars())

    def mark_account_synced(self, account_id: int) -> None:
        account = self.db.get(ImapAccount, account_id)
        if account is not None:
            account.last_synced_at = datetime.now(timezone.utc)
            self.db.commit()

    def get_folder(self, account_id: int, full_name: str) -> Optional[ImapFolder]:
        return self.db.execute(
            select(ImapFolder).where(
                ImapFolder.account_id == account_id,
                ImapFolder.full_name == full_name,
            )
        ).scalar_one_or_none()

    def list_folders(self, account_id: Optional[int] = None) -> List[ImapFolder]:
        query = select(ImapFolder).order_by(ImapFolder.full_name)
        if account_id is not None:
            query = query.where(ImapFolder.account_id == account_id)
        return list(self.db.execute(query).scalars())

    def upsert_folders(self, account_id: int, folders: Iterable[FolderInfo]) -> Dict[str, ImapFolder]:
        """
        Make sure a folder row exists for every listed folder.

        Returns:
            Mapping of full folder name to ImapFolder row
        """
        result: Dict[str, ImapFolder] = {}
        for info in folders:
            row = self.get_folder(account_id, info.full_name)
            if row is None:
                row = ImapFolder(
                    account_id=account_id,
                    full_name=sanitize_for_postgres(info.full_name, "full_name", 500),
                    display_name=sanitize_for_postgres(info.display_name, "display_name", 500),
                )
                self.db.add(row)
                try:
                    self.db.commit()
                except IntegrityError:
                    logger.debug(f"Folder {info.full_name} created concurrently")
                    self.db.rollback()
                    row = self.get_folder(account_id, info.full_name)
            else:
                row.display_name = sanitize_for_postgres(info.display_name, "display_name", 500)
                self.db.commit()
            result[info.full_name] = row
        return result

    def update_folder_hints(self, folder_id: int, uid_validity: Optional[int], last_uid: Optional[int]) -> None:
        """Record advisory UID hints after a backfill pass."""
        folder = self.db.get(ImapFolder, folder_id)
        if folder is None:
            return
        if uid_validity:
            folder.uid_validity = uid_validity
        if last_uid and (folder.last_uid or 0) < last_uid:
            folder.last_uid = last_uid
        self.db.commit()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _find_message(self, folder_id: int, uid: int) -> Optional[ImapMessage]:
        return self.db.execute(
            select(ImapMessage).where(
                ImapMessage.folder_id == folder_id,
                ImapMessage.imap_uid == uid,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _apply_headers(row: ImapMessage, subject: str, from_name: str, from_address: str,
                       received_utc: datetime) -> None:
        row.subject = sanitize_for_postgres(subject or "", "subject")
        row.from_name = sanitize_for_postgres(from_name or "", "from_name", 500)
        row.from_address = sanitize_for_postgres(from_address or "", "from_address", 500)
        row.received_utc = received_utc

    def upsert_message(
        self,
        folder_id: int,
        uid: int,
        *,
        subject: str,
        from_name: str,
        from_address: str,
        received_utc: datetime,
        message_id: str = "",
        server: Optional[str] = None,
        update_existing: bool = True,
    ) -> ImapMessage:
        """
        Insert or update the message row for (folder_id, uid).

        If the insert loses a race against another writer, the existing row
        is re-read and updated instead.

        Args:
            folder_id: Folder row id
            uid: IMAP UID
            message_id: RFC822 Message-ID (synthesized from uid/server if blank)
            server: IMAP host for the synthetic Message-ID
            update_existing: When False, an existing row is returned untouched

        Returns:
            The persisted ImapMessage
        """
        existing = self._find_message(folder_id, uid)
        if existing is not None:
            if update_existing:
                self._apply_headers(existing, subject, from_name, from_address, received_utc)
                self.db.commit()
            return existing

        message_id = sanitize_for_postgres(message_id or synthetic_message_id(uid, server), "message_id", 1000)
        row = ImapMessage(
            folder_id=folder_id,
            imap_uid=uid,
            message_id=message_id,
            hash=f"{message_id}:{uid}",
        )
        self._apply_headers(row, subject, from_name, from_address, received_utc)
        self.db.add(row)

        try:
            self.db.commit()
            return row
        except IntegrityError:
            # Another writer created (folder_id, uid) between our read and insert
            logger.debug(f"Message {folder_id}/{uid} created concurrently, updating existing row")
            self.db.rollback()
            existing = self._find_message(folder_id, uid)
            if existing is None:
                raise
            if update_existing:
                self._apply_headers(existing, subject, from_name, from_address, received_utc)
                self.db.commit()
            return existing

    def upsert_parsed_message(self, folder_id: int, uid: int, parsed: ParsedMessage,
                              server: Optional[str] = None) -> ImapMessage:
        return self.upsert_message(
            folder_id,
            uid,
            subject=parsed.subject,
            from_name=parsed.from_name,
            from_address=parsed.from_address,
            received_utc=parsed.received_utc,
            message_id=parsed.message_id,
            server=server,
        )

    def insert_new_summaries(self, folder_id: int, summaries: Sequence[MessageSummary],
                             server: Optional[str] = None) -> int:
        """
        Record envelope summaries for UIDs not yet mirrored. Existing rows are
        left alone so that backfilled headers are never replaced by envelope data.

        Returns:
            Number of rows created
        """
        known = set(self.known_uids(folder_id))
        created = 0
        for summary in summaries:
            if summary.uid in known:
                continue
            self.upsert_message(
                folder_id,
                summary.uid,
                subject=summary.subject,
                from_name=summary.from_name,
                from_address=summary.from_address,
                received_utc=summary.received,
                message_id=summary.message_id,
                server=server,
                update_existing=False,
            )
            created += 1
        return created

    def known_uids(self, folder_id: int) -> Dict[int, bool]:
        """
        All locally mirrored UIDs of a folder.

        Returns:
            Mapping of UID to whether a MessageBody exists
        """
        rows = self.db.execute(
            select(ImapMessage.imap_uid, MessageBody.message_id)
            .outerjoin(MessageBody, MessageBody.message_id == ImapMessage.id)
            .where(ImapMessage.folder_id == folder_id)
        ).all()
        return {uid: body_id is not None for uid, body_id in rows}

    def find_message(self, account_id: Optional[int], folder_name: str, uid: int) -> ImapMessage:
        """
        Look up a message by folder name and UID.

        Args:
            account_id: Owning account, or None to match the first account
                        that has such a folder

        Raises:
            MessageNotFoundError: No such message is mirrored
        """
        stmt = (
            select(ImapMessage)
            .join(ImapFolder, ImapFolder.id == ImapMessage.folder_id)
            .where(ImapFolder.full_name == folder_name, ImapMessage.imap_uid == uid)
            .order_by(ImapFolder.account_id)
        )
        if account_id is not None:
            stmt = stmt.where(ImapFolder.account_id == account_id)
        row = self.db.execute(stmt).scalars().first()
        if row is None:
            raise MessageNotFoundError(f"No message with UID {uid} in {folder_name}")
        return row

    def get_body(self, message_id: int) -> Optional[MessageBody]:
        return self.db.get(MessageBody, message_id)

    def list_attachments(self, message_id: int,
                         content_type_prefix: Optional[str] = None) -> List[MessageAttachment]:
        query = (
            select(MessageAttachment)
            .where(MessageAttachment.message_id == message_id)
            .order_by(MessageAttachment.id)
        )
        if content_type_prefix:
            query = query.where(
                func.lower(MessageAttachment.content_type).startswith(content_type_prefix.lower(), autoescape=True)
            )
        return list(self.db.execute(query).scalars())

    # ------------------------------------------------------------------
    # Bodies and attachments
    # ------------------------------------------------------------------

    def store_content(self, message: ImapMessage, parsed: ParsedMessage,
                      blob_store: Optional[BlobStore] = None) -> Tuple[bool, int]:
        """
        Persist body and attachments for one message in a single transaction.

        The body is only written when none exists; attachments are only
        written when the message has none yet. Existing content is never
        overwritten.

        Returns:
            (body_created, attachments_created)
        """
        body_created = False
        attachments_created = 0
        try:
            if self.db.get(MessageBody, message.id) is None:
                self.db.add(MessageBody(
                    message_id=message.id,
                    plain_text=sanitize_for_postgres(parsed.plain_text, "plain_text"),
                    html_text=sanitize_for_postgres(parsed.html_text, "html_text"),
                    sanitized_html=sanitize_for_postgres(parsed.sanitized_html, "sanitized_html"),
                    headers=parsed.headers,
                    preview=parsed.preview,
                ))
                body_created = True

            has_attachments = self.db.execute(
                select(exists().where(MessageAttachment.message_id == message.id))
            ).scalar()
            if not has_attachments and parsed.attachments and blob_store is not None:
                for part in parsed.attachments:
                    with part.open() as stream:
                        blob = blob_store.put(stream)
                    self.db.add(MessageAttachment(
                        message_id=message.id,
                        file_name=sanitize_for_postgres(part.file_name, "file_name", 1000),
                        content_type=sanitize_for_postgres(part.content_type, "content_type", 255),
                        disposition=sanitize_for_postgres(part.disposition, "disposition"),
                        size_bytes=blob.size_bytes,
                        hash=blob.sha256,
                        storage_key=blob.storage_key,
                    ))
                    attachments_created += 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return body_created, attachments_created

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def messages_needing_embedding(self, limit: int) -> List[Tuple[ImapMessage, MessageBody]]:
        """Bodied messages without any embedding, most recently received first."""
        rows = self.db.execute(
            select(ImapMessage, MessageBody)
            .join(MessageBody, MessageBody.message_id == ImapMessage.id)
            .where(~exists().where(MessageEmbedding.message_id == ImapMessage.id))
            .order_by(ImapMessage.received_utc.desc(), ImapMessage.id.desc())
            .limit(limit)
        ).all()
        return [(message, body) for message, body in rows]

    def insert_embeddings(self, vectors: Dict[int, np.ndarray], model_version: str,
                          chunk_index: int = 0) -> None:
        """
        Insert one embedding per message, ignoring rows that already exist.
        """
        if not vectors:
            return

        now = datetime.now(timezone.utc)
        rows = [
            {
                "message_id": message_id,
                "chunk_index": chunk_index,
                "vector": np.asarray(vector, dtype=np.float32).tolist(),
                "model_version": model_version,
                "created_at": now,
            }
            for message_id, vector in vectors.items()
        ]

        dialect = self.db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(MessageEmbedding).values(rows).on_conflict_do_nothing(
            index_elements=["message_id", "chunk_index"]
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.debug(f"Stored {len(rows)} embedding(s) ({model_version})")
