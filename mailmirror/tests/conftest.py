"""
Shared fixtures: in-memory SQLite mirror, deterministic embedding runtime,
and a scriptable IMAP server standing in for IMAPClient.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pytest
from imapclient.response_types import Address, Envelope
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mailmirror.core.config import Settings
from mailmirror.core.database.connection import create_tables
from mailmirror.core.search.runtime import EmbeddingRuntime
from mailmirror.core.storage.blob_store import BlobStore

DIMENSION = 1024
BASE_DATE = datetime(2024, 10, 1, 8, 0, tzinfo=timezone.utc)


# ----------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def blob_store(tmp_path):
    return BlobStore(tmp_path / "blobs")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        blob_store_dir=str(tmp_path / "blobs"),
        backfill_interval_seconds=3600,
        embedding_idle_interval_seconds=3600,
        embedding_active_interval_seconds=3600,
        embedding_token_budget=64,
        embedding_max_seq_len=16,
        embedding_batch_cap=8,
    )


# ----------------------------------------------------------------------
# Embedding runtime
# ----------------------------------------------------------------------

class FakeRuntime(EmbeddingRuntime):
    """Word-level tokenizer and a hidden state derived from token ids."""

    def __init__(self, dimension: int = DIMENSION):
        self._dimension = dimension
        self.forward_shapes: List[tuple] = []
        self.fail = False

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_version(self) -> str:
        return "fake-embedding"

    @property
    def pad_token_id(self) -> int:
        return 0

    def tokenize(self, text: str) -> List[int]:
        return [sum(ord(c) for c in word) % 997 + 1 for word in text.split()]

    def forward(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
        if self.fail:
            from mailmirror.core.search.runtime import EmbeddingUnavailableError
            raise EmbeddingUnavailableError("runtime offline")
        self.forward_shapes.append(input_ids.shape)
        scale = np.arange(1, self._dimension + 1, dtype=np.float32) * 0.001
        # Cumulative sum so the last position depends on the whole sequence
        cumulative = np.cumsum(input_ids, axis=1).astype(np.float32)
        return np.sin(cumulative[..., None] * scale) + 0.5


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


# ----------------------------------------------------------------------
# Messages and IMAP
# ----------------------------------------------------------------------

def build_raw_message(
    subject: str = "Hello",
    sender: str = "Alice Example <alice@example.com>",
    body: Optional[str] = "Plain body text",
    html: Optional[str] = None,
    date: datetime = BASE_DATE,
    message_id: Optional[str] = "<msg@example.com>",
    attachments: Optional[Dict[str, Union[bytes, Tuple[bytes, str]]]] = None,
    cc: Optional[str] = None,
) -> bytes:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "me@example.com"
    if cc:
        msg["Cc"] = cc
    msg["Subject"] = subject
    msg["Date"] = format_datetime(date)
    if message_id:
        msg["Message-ID"] = message_id
    if body is not None:
        msg.set_content(body)
    if html is not None:
        if body is None:
            msg.set_content(html, subtype="html")
        else:
            msg.add_alternative(html, subtype="html")
    for name, value in (attachments or {}).items():
        data, content_type = value if isinstance(value, tuple) else (value, "application/octet-stream")
        maintype, subtype = content_type.split("/", 1)
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=name)
    return msg.as_bytes()


@dataclass
class FakeMessage:
    uid: int
    subject: str
    from_name: str
    from_address: str
    received: datetime
    raw: bytes = b""

    def envelope(self) -> Envelope:
        mailbox, host = self.from_address.split("@")
        sender = Address(self.from_name.encode(), None, mailbox.encode(), host.encode())
        return Envelope(
            date=self.received,
            subject=self.subject.encode(),
            from_=(sender,),
            sender=(sender,),
            reply_to=(sender,),
            to=None,
            cc=None,
            bcc=None,
            in_reply_to=None,
            message_id=f"<{self.uid}@example.com>".encode(),
        )


def make_messages(count: int, start_uid: int = 1) -> List[FakeMessage]:
    messages = []
    for i in range(count):
        uid = start_uid + i
        received = BASE_DATE + timedelta(minutes=uid)
        subject = f"Message {uid}"
        messages.append(FakeMessage(
            uid=uid,
            subject=subject,
            from_name="Alice Example",
            from_address="alice@example.com",
            received=received,
            raw=build_raw_message(
                subject=subject,
                body=f"Body of message {uid}",
                date=received,
                message_id=f"<{uid}@example.com>",
            ),
        ))
    return messages


@dataclass
class FakeIMAPServer:
    """
    Behaves like a logged-in IMAPClient for the calls the sync engine makes.
    Sequence numbers follow UID order, as on a real server.
    """
    folders: Dict[str, List[FakeMessage]] = field(default_factory=dict)
    flags: Dict[str, tuple] = field(default_factory=dict)
    use_uid: bool = True
    selected: Optional[str] = None
    fetched_uids: List[int] = field(default_factory=list)
    logged_out: bool = False

    def login(self, username, password):
        return b"OK"

    def logout(self):
        self.logged_out = True

    def list_folders(self):
        return [
            (self.flags.get(name, (b"\\HasNoChildren",)), b"/", name)
            for name in self.folders
        ]

    def folder_status(self, name, items):
        messages = self.folders[name]
        return {
            b"MESSAGES": len(messages),
            b"UNSEEN": 0,
            b"UIDVALIDITY": 7,
            b"UIDNEXT": (max((m.uid for m in messages), default=0) + 1),
        }

    def select_folder(self, name, readonly=False):
        self.selected = name
        messages = self.folders[name]
        return {
            b"EXISTS": len(messages),
            b"UIDVALIDITY": 7,
            b"UIDNEXT": (max((m.uid for m in messages), default=0) + 1),
        }

    def close_folder(self):
        self.selected = None

    def _ordered(self) -> List[FakeMessage]:
        return sorted(self.folders[self.selected], key=lambda m: m.uid)

    def search(self, criteria):
        return [m.uid for m in self._ordered()]

    def fetch(self, messages, items):
        ordered = self._ordered()
        if not self.use_uid:
            start, end = (int(x) for x in messages.split(":"))
            return {
                seq: {
                    b"SEQ": seq,
                    b"UID": ordered[seq - 1].uid,
                    b"ENVELOPE": ordered[seq - 1].envelope(),
                    b"INTERNALDATE": ordered[seq - 1].received,
                }
                for seq in range(start, end + 1)
            }

        by_uid = {m.uid: m for m in ordered}
        response = {}
        for uid in messages:
            message = by_uid.get(uid)
            if message is None:
                continue
            self.fetched_uids.append(uid)
            response[uid] = {
                b"SEQ": ordered.index(message) + 1,
                b"BODY[]": message.raw,
                b"INTERNALDATE": message.received,
            }
        return response


@pytest.fixture
def fake_server():
    return FakeIMAPServer(folders={"INBOX": make_messages(100)})


@pytest.fixture
def raw_message():
    """Factory for raw RFC 822 bytes (see build_raw_message)."""
    return build_raw_message


@pytest.fixture
def message_factory():
    """Factory for FakeMessage lists (see make_messages)."""
    return make_messages


@pytest.fixture
def server_factory():
    def factory(folders: Dict[str, List[FakeMessage]], flags: Optional[Dict[str, tuple]] = None):
        return FakeIMAPServer(folders=folders, flags=flags or {})
    return factory
