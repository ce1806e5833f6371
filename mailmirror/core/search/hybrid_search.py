"""
Hybrid Search

Runs up to three independent signals over the local mirror and merges them:
1. Subject: every query term must appear in the subject (ILIKE)
2. Sender: address or display name contains the query (ILIKE)
3. Vector: nearest message embeddings by inner product (pgvector)

Exact signals outrank semantic ones. A message found by several signals
appears once, under its best signal.
"""
from typing import Callable, Dict, Iterable, List, Optional
from dataclasses import dataclass, asdict
from datetime import datetime
from email.utils import parseaddr
from enum import Enum
import logging

import numpy as np
from sqlalchemy import select, and_, or_
from sqlalchemy.orm import Session

from mailmirror.core.database.models import ImapFolder, ImapMessage, MessageBody, MessageEmbedding

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 50


class SearchMode(str, Enum):
    AUTO = "auto"
    SUBJECT = "subject"
    SENDER = "sender"
    CONTENT = "content"
    ALL = "all"

    def resolve(self, query: str) -> "SearchMode":
        """AUTO becomes SENDER for address-like queries and ALL otherwise."""
        if self is not SearchMode.AUTO:
            return self
        return SearchMode.SENDER if "@" in query else SearchMode.ALL


class SignalKind(str, Enum):
    SUBJECT = "subject"
    SENDER = "sender"
    VECTOR = "vector"
    RECENT = "recent"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]


_PRIORITY = {
    SignalKind.SUBJECT: 0,
    SignalKind.SENDER: 1,
    SignalKind.VECTOR: 2,
    SignalKind.RECENT: 3,
}


@dataclass
class SignalResult:
    """One candidate produced by one signal"""
    message: ImapMessage
    folder_name: str
    preview: Optional[str]
    kind: SignalKind
    score: float = 0.0

    def rank_key(self):
        received = self.message.received_utc
        received_ts = received.timestamp() if received is not None else 0.0
        return (self.kind.priority, self.score, -received_ts, -int(self.message.imap_uid))


@dataclass
class SearchResult:
    id: int
    folder: str
    uid: int
    message_id: str
    subject: str
    sender: str
    sender_address: str
    preview: str
    received: Optional[datetime]
    score: float
    signal: str

    @classmethod
    def from_signal(cls, result: SignalResult) -> "SearchResult":
        message = result.message
        subject = message.subject or "(No subject)"
        return cls(
            id=message.id,
            folder=result.folder_name,
            uid=int(message.imap_uid),
            message_id=message.message_id or "",
            subject=subject,
            sender=message.from_name or message.from_address or "",
            sender_address=message.from_address or "",
            preview=result.preview or subject,
            received=message.received_utc,
            score=float(result.score),
            signal=result.kind.value,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["received"] = self.received.isoformat() if self.received else None
        return data


def merge_signals(results: Iterable[SignalResult],
                  limit: int = MAX_SEARCH_RESULTS) -> List[SignalResult]:
    """
    Deduplicate by message (keeping the best priority, then the lowest
    score) and order by priority, score, received desc, UID desc.
    """
    best: Dict[int, SignalResult] = {}
    for result in results:
        current = best.get(result.message.id)
        if current is None or (result.kind.priority, result.score) < (current.kind.priority, current.score):
            best[result.message.id] = result
    return sorted(best.values(), key=SignalResult.rank_key)[:limit]


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class HybridSearch:
    """
    Search over the mirror database.

    Synchronous; the sync session runs it in a worker thread with its own
    database session.
    """

    def __init__(self, db: Session,
                 embed_query: Optional[Callable[[str], np.ndarray]] = None,
                 limit: int = MAX_SEARCH_RESULTS):
        """
        Args:
            db: Database session
            embed_query: Callable turning a query into a unit-length vector;
                         without it the vector signal is skipped
            limit: Maximum results per signal and overall
        """
        self.db = db
        self.embed_query = embed_query
        self.limit = limit

    def search(
        self,
        query: str,
        mode: SearchMode = SearchMode.AUTO,
        since: Optional[datetime] = None,
        cursor: Optional[int] = None,
        account_id: Optional[int] = None,
    ) -> List[SearchResult]:
        """
        Perform hybrid search.

        Args:
            query: Free text; empty lists the most recent messages
            mode: Which signals to run
            since: Only messages received at or after this time
            cursor: Only messages with a UID below this value
            account_id: Restrict to one account's folders

        Returns:
            At most `limit` results, best first
        """
        query = (query or "").strip()
        mode = SearchMode(mode)
        filters = self._filters(since, cursor, account_id)

        if not query:
            results = self._recent(filters)
        else:
            resolved = mode.resolve(query)
            results = []
            if resolved in (SearchMode.SUBJECT, SearchMode.ALL):
                results.extend(self._subject_signal(query, filters))
            if resolved in (SearchMode.SENDER, SearchMode.ALL):
                results.extend(self._sender_signal(query, filters))
            if resolved in (SearchMode.CONTENT, SearchMode.ALL):
                results.extend(self._vector_signal(query, filters))
            logger.debug(f"Search '{query}' ({resolved.value}): {len(results)} candidate(s)")

        return [SearchResult.from_signal(r) for r in merge_signals(results, self.limit)]

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _filters(self, since: Optional[datetime], cursor: Optional[int],
                 account_id: Optional[int]) -> list:
        filters = []
        if since is not None:
            filters.append(ImapMessage.received_utc >= since)
        if cursor is not None:
            filters.append(ImapMessage.imap_uid < cursor)
        if account_id is not None:
            filters.append(ImapFolder.account_id == account_id)
        return filters

    def _base_query(self, *extra_columns):
        return (
            select(ImapMessage, ImapFolder.full_name, MessageBody.preview, *extra_columns)
            .join(ImapFolder, ImapFolder.id == ImapMessage.folder_id)
            .outerjoin(MessageBody, MessageBody.message_id == ImapMessage.id)
        )

    def _collect(self, stmt, kind: SignalKind) -> List[SignalResult]:
        return [
            SignalResult(message=message, folder_name=folder_name, preview=preview, kind=kind)
            for message, folder_name, preview in self.db.execute(stmt).all()
        ]

    def _recent(self, filters: list) -> List[SignalResult]:
        stmt = (
            self._base_query()
            .where(and_(*filters))
            .order_by(ImapMessage.received_utc.desc(), ImapMessage.imap_uid.desc())
            .limit(self.limit)
        )
        return self._collect(stmt, SignalKind.RECENT)

    def _subject_signal(self, query: str, filters: list) -> List[SignalResult]:
        terms = query.split()
        if not terms:
            return []
        conditions = [ImapMessage.subject.ilike(_like_pattern(term), escape="\\") for term in terms]
        stmt = (
            self._base_query()
            .where(and_(*conditions, *filters))
            .order_by(ImapMessage.imap_uid.desc())
            .limit(self.limit)
        )
        return self._collect(stmt, SignalKind.SUBJECT)

    def _sender_signal(self, query: str, filters: list) -> List[SignalResult]:
        name = address = query
        if "@" in query or "<" in query:
            parsed_name, parsed_address = parseaddr(query)
            name = parsed_name.strip() or query
            address = parsed_address.strip() or query

        stmt = (
            self._base_query()
            .where(and_(
                or_(
                    ImapMessage.from_address.ilike(_like_pattern(address), escape="\\"),
                    ImapMessage.from_name.ilike(_like_pattern(name), escape="\\"),
                ),
                *filters,
            ))
            .order_by(ImapMessage.imap_uid.desc())
            .limit(self.limit)
        )
        return self._collect(stmt, SignalKind.SENDER)

    def _vector_signal(self, query: str, filters: list) -> List[SignalResult]:
        if self.embed_query is None:
            return []
        if self.db.get_bind().dialect.name != "postgresql":
            logger.debug("Vector search requires PostgreSQL with pgvector, skipping")
            return []

        try:
            vector = np.asarray(self.embed_query(query), dtype=np.float32)
        except Exception as e:
            logger.warning(f"Query embedding failed, skipping vector search: {e}")
            return []

        # <#> is the negative inner product; +1 maps a perfect match to 0
        distance = MessageEmbedding.vector.max_inner_product(vector.tolist())
        stmt = (
            self._base_query(distance.label("distance"))
            .join(MessageEmbedding, MessageEmbedding.message_id == ImapMessage.id)
            .where(and_(*filters))
            .order_by(distance)
            .limit(self.limit)
        )
        return [
            SignalResult(message=message, folder_name=folder_name, preview=preview,
                         kind=SignalKind.VECTOR, score=float(nip) + 1.0)
            for message, folder_name, preview, nip in self.db.execute(stmt).all()
        ]
