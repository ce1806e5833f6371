"""
SQLAlchemy Database Models

Stores the local mirror of one or more IMAP accounts:
- Accounts and folders (with advisory UID hints)
- Message headers, keyed by (folder, IMAP UID)
- Bodies (plain text, raw HTML, sanitized HTML, header map, preview)
- Attachment metadata (binary content lives in the blob store)
- Vector embeddings for semantic search (pgvector halfvec)
"""
from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, Text, JSON,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone

from pgvector.sqlalchemy import HALFVEC

# Qwen3-Embedding-0.6B hidden size
EMBEDDING_DIMENSION = 1024

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImapAccount(Base):
    """One remote mailbox credential set (the password is never stored)."""
    __tablename__ = "imap_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    display_name = Column(String(200), nullable=False, default="")
    server = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False, default=993)
    use_ssl = Column(Boolean, nullable=False, default=True)
    username = Column(String(320), nullable=False)
    last_synced_at = Column(DateTime(timezone=True))

    folders = relationship("ImapFolder", back_populates="account")

    __table_args__ = (
        UniqueConstraint('server', 'username', name='uq_imap_accounts_server_username'),
    )


class ImapFolder(Base):
    """
    A folder on the remote server.

    uid_validity/last_uid are hints recorded after each backfill pass; the
    server is always authoritative.
    """
    __tablename__ = "imap_folders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey('imap_accounts.id'), nullable=False)
    full_name = Column(String(500), nullable=False)
    display_name = Column(String(500), nullable=False, default="")
    uid_validity = Column(BigInteger)
    last_uid = Column(BigInteger)

    account = relationship("ImapAccount", back_populates="folders")
    messages = relationship("ImapMessage", back_populates="folder")

    __table_args__ = (
        UniqueConstraint('account_id', 'full_name', name='uq_imap_folders_account_full_name'),
    )


class ImapMessage(Base):
    """
    Message header record. (folder_id, imap_uid) is the natural key; rows are
    never deleted by the sync engine.
    """
    __tablename__ = "imap_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    folder_id = Column(Integer, ForeignKey('imap_folders.id'), nullable=False)
    imap_uid = Column(BigInteger, nullable=False)
    message_id = Column(String(1000), nullable=False, default="")  # RFC822 Message-ID or uid:{uid}@{server}
    subject = Column(Text, nullable=False, default="")
    from_name = Column(String(500), nullable=False, default="")
    from_address = Column(String(500), nullable=False, default="")
    received_utc = Column(DateTime(timezone=True), nullable=False)
    hash = Column(String(1100), nullable=False, default="")

    folder = relationship("ImapFolder", back_populates="messages")
    body = relationship("MessageBody", back_populates="message", uselist=False)
    attachments = relationship("MessageAttachment", back_populates="message")
    embeddings = relationship("MessageEmbedding", back_populates="message")

    __table_args__ = (
        UniqueConstraint('folder_id', 'imap_uid', name='uq_imap_messages_folder_uid'),
        Index('ix_imap_messages_received_utc', 'received_utc'),
        Index('ix_imap_messages_from_address', 'from_address'),
    )


class MessageBody(Base):
    """Fetched content. Written once; later fetches never clobber it."""
    __tablename__ = "message_bodies"

    message_id = Column(Integer, ForeignKey('imap_messages.id'), primary_key=True)
    plain_text = Column(Text)
    html_text = Column(Text)
    sanitized_html = Column(Text)
    headers = Column(JSON, default=dict)  # header name -> list of values
    preview = Column(String(240), nullable=False, default="")

    message = relationship("ImapMessage", back_populates="body")


class MessageAttachment(Base):
    """Attachment metadata; storage_key points into the blob store."""
    __tablename__ = "message_attachments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey('imap_messages.id'), nullable=False, index=True)
    file_name = Column(String(1000), nullable=False, default="attachment")
    content_type = Column(String(255), nullable=False, default="application/octet-stream")
    disposition = Column(Text)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    hash = Column(String(64), nullable=False)  # uppercase hex SHA-256
    storage_key = Column(String(200), nullable=False)

    message = relationship("ImapMessage", back_populates="attachments")


class MessageEmbedding(Base):
    """
    Vector embeddings for semantic search.
    One row per (message, chunk). Rows are created once and not recomputed
    when model_version changes.
    """
    __tablename__ = "message_embeddings"

    message_id = Column(Integer, ForeignKey('imap_messages.id'), primary_key=True)
    chunk_index = Column(Integer, primary_key=True, default=0)

    # halfvec keeps the index at half the size of vector(1024)
    vector = Column(HALFVEC(EMBEDDING_DIMENSION), nullable=False)

    model_version = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    message = relationship("ImapMessage", back_populates="embeddings")

    # Vector index is created by create_tables() on PostgreSQL:
    # CREATE INDEX ... USING hnsw (vector halfvec_ip_ops);


def schema_snapshot() -> list:
    """One "table (column, ...)" line per mirror table, in dependency order."""
    return [
        f"{table.name} ({', '.join(column.name for column in table.columns)})"
        for table in Base.metadata.sorted_tables
    ]
