"""
Test hybrid search: exact signals, vector signal merging and ranking.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.dialects import postgresql

from mailmirror.core.database.models import ImapMessage, MessageBody
from mailmirror.core.database.repository import MailRepository
from mailmirror.core.email.models import AccountSettings, FolderInfo
from mailmirror.core.search.hybrid_search import (
    HybridSearch,
    SearchMode,
    SearchResult,
    SignalKind,
    SignalResult,
    merge_signals,
)

BASE = datetime(2024, 10, 1, 8, 0, tzinfo=timezone.utc)

MAILBOX = [
    # uid, subject, from_name, from_address
    (1, "Lunch on Friday", "Bob Builder", "bob@example.org"),
    (2, "Quarterly report", "Alice Example", "alice@example.com"),
    (3, "October Invoice Attached", "Billing", "billing@vendor.test"),
    (4, "Re: invoice for september", "Billing", "billing@vendor.test"),
    (5, "100% discount_code inside", "Promo", "promo@shop.test"),
    (6, "Meeting notes", "Alice Example", "alice@example.com"),
]


@pytest.fixture
def mailbox(db):
    """Insert MAILBOX into INBOX; returns {uid: message id}."""
    repo = MailRepository(db)
    account = repo.get_or_create_account(AccountSettings(server="imap.example.com", username="me@example.com"))
    folder = repo.upsert_folders(account.id, [FolderInfo(full_name="INBOX", display_name="INBOX")])["INBOX"]
    ids = {}
    for uid, subject, from_name, from_address in MAILBOX:
        row = ImapMessage(
            folder_id=folder.id,
            imap_uid=uid,
            message_id=f"<{uid}@example.com>",
            subject=subject,
            from_name=from_name,
            from_address=from_address,
            received_utc=BASE + timedelta(days=uid),
        )
        db.add(row)
        db.flush()
        db.add(MessageBody(message_id=row.id, plain_text=f"body {uid}", preview=f"preview {uid}"))
        ids[uid] = row.id
    db.commit()
    return ids


def vector_hits(db, uids_and_scores):
    """Stand-in vector signal returning the given (uid, score) pairs."""
    def signal(self, query, filters):
        results = []
        for uid, score in uids_and_scores:
            message = db.query(ImapMessage).filter(ImapMessage.imap_uid == uid).one()
            results.append(SignalResult(message=message, folder_name="INBOX", preview=None,
                                        kind=SignalKind.VECTOR, score=score))
        return results
    return signal


class TestSearchMode:

    def test_auto_resolution(self):
        assert SearchMode.AUTO.resolve("alice@example.com") == SearchMode.SENDER
        assert SearchMode.AUTO.resolve("invoice") == SearchMode.ALL
        assert SearchMode.SUBJECT.resolve("a@b") == SearchMode.SUBJECT


class TestExactSignals:
    """Test subject and sender matching"""

    def test_subject_terms_in_any_order(self, db, mailbox):
        results = HybridSearch(db).search("Invoice October", mode=SearchMode.SUBJECT)

        assert [r.uid for r in results] == [3]
        assert results[0].subject == "October Invoice Attached"
        assert results[0].signal == "subject"
        assert results[0].preview == "preview 3"

    def test_subject_case_insensitive(self, db, mailbox):
        results = HybridSearch(db).search("INVOICE", mode=SearchMode.SUBJECT)
        assert [r.uid for r in results] == [4, 3]

    def test_like_wildcards_are_literal(self, db, mailbox):
        assert [r.uid for r in HybridSearch(db).search("100%", mode="subject")] == [5]
        assert [r.uid for r in HybridSearch(db).search("discount_code", mode="subject")] == [5]
        assert HybridSearch(db).search("_", mode="subject")[0].uid == 5
        assert HybridSearch(db).search("1%0", mode="subject") == []

    def test_address_query_uses_sender_signal(self, db, mailbox):
        results = HybridSearch(db).search("alice@example.com")

        assert [r.uid for r in results] == [6, 2]
        assert all(r.signal == "sender" for r in results)
        assert results[0].sender == "Alice Example"
        assert results[0].sender_address == "alice@example.com"

    def test_sender_display_name(self, db, mailbox):
        results = HybridSearch(db).search("bob builder", mode="sender")
        assert [r.uid for r in results] == [1]

    def test_bare_name_is_matched_as_a_whole(self, db, mailbox):
        folder_id = db.get(ImapMessage, mailbox[1]).folder_id
        db.add(ImapMessage(folder_id=folder_id, imap_uid=7, message_id="<7@example.com>", subject="Hi",
                           from_name="Bob Smith", from_address="bob.smith@y.org", received_utc=BASE))
        db.commit()

        results = HybridSearch(db).search("bob builder", mode="sender")

        assert [r.uid for r in results] == [1]

    def test_name_and_address_query(self, db, mailbox):
        results = HybridSearch(db).search("Someone Else <billing@vendor.test>", mode="sender")
        assert [r.uid for r in results] == [4, 3]

    def test_empty_query_lists_recent(self, db, mailbox):
        results = HybridSearch(db).search("   ")
        assert [r.uid for r in results] == [6, 5, 4, 3, 2, 1]
        assert all(r.signal == "recent" for r in results)

    def test_since_and_cursor(self, db, mailbox):
        search = HybridSearch(db)

        since = search.search("", since=BASE + timedelta(days=4))
        assert [r.uid for r in since] == [6, 5, 4]

        older = search.search("", cursor=4)
        assert [r.uid for r in older] == [3, 2, 1]

    def test_account_filter(self, db, mailbox):
        assert HybridSearch(db).search("invoice", mode="subject", account_id=999) == []

    def test_limit(self, db, mailbox):
        assert len(HybridSearch(db, limit=2).search("")) == 2


class TestVectorSignal:
    """Test merging of semantic results with exact ones"""

    def test_skipped_without_postgres(self, db, mailbox):
        embed = Mock()
        results = HybridSearch(db, embed_query=embed).search("anything at all", mode="content")
        assert results == []
        embed.assert_not_called()

    def test_duplicate_keeps_subject_signal(self, db, mailbox):
        with patch.object(HybridSearch, "_vector_signal", autospec=True,
                          side_effect=vector_hits(db, [(3, 0.1), (2, 0.4)])):
            results = HybridSearch(db).search("October Invoice")

        assert [r.uid for r in results] == [3, 2]
        assert [r.signal for r in results] == ["subject", "vector"]
        assert results[0].score == 0.0
        assert results[1].score == pytest.approx(0.4)

    def test_vector_results_ordered_by_score(self, db, mailbox):
        with patch.object(HybridSearch, "_vector_signal", autospec=True,
                          side_effect=vector_hits(db, [(1, 0.5), (6, 0.2), (2, 0.3)])):
            results = HybridSearch(db).search("something vague", mode="content")

        assert [r.uid for r in results] == [6, 2, 1]
        assert results[0].preview == "Meeting notes"

    def test_embedding_failure_falls_back(self, db, mailbox):
        with patch.object(db.get_bind().dialect, "name", "postgresql"):
            search = HybridSearch(db, embed_query=Mock(side_effect=RuntimeError("model offline")))
            results = search.search("Invoice", mode="content")
        assert results == []

    def test_statement_orders_by_inner_product(self):
        message = ImapMessage(id=1, imap_uid=3, subject="October Invoice Attached", received_utc=BASE)
        db = Mock()
        db.get_bind.return_value.dialect.name = "postgresql"
        db.execute.return_value.all.return_value = [(message, "INBOX", "preview 3", -0.75)]
        search = HybridSearch(db, embed_query=Mock(return_value=[1.0] + [0.0] * 1023), limit=7)

        results = search._vector_signal("invoice", search._filters(BASE, 40, 2))

        sql = str(db.execute.call_args.args[0].compile(dialect=postgresql.dialect()))
        assert "JOIN message_embeddings ON message_embeddings.message_id = imap_messages.id" in sql
        assert "message_embeddings.vector <#>" in sql
        order_by = sql.split("ORDER BY", 1)[1]
        assert "<#>" in order_by or order_by.lstrip().startswith("distance")
        assert "imap_messages.received_utc >=" in sql
        assert "imap_messages.imap_uid <" in sql
        assert "imap_folders.account_id =" in sql
        assert "LIMIT" in sql
        assert [(r.kind, r.folder_name) for r in results] == [(SignalKind.VECTOR, "INBOX")]
        assert results[0].score == pytest.approx(0.25)


class TestMergeSignals:

    def make(self, id, uid, kind, score=0.0, days=0):
        message = ImapMessage(id=id, imap_uid=uid, subject="s", received_utc=BASE + timedelta(days=days))
        return SignalResult(message=message, folder_name="INBOX", preview=None, kind=kind, score=score)

    def test_priority_then_score_then_recency(self):
        merged = merge_signals([
            self.make(1, 1, SignalKind.VECTOR, 0.2),
            self.make(2, 2, SignalKind.SENDER, days=1),
            self.make(3, 3, SignalKind.SUBJECT, days=1),
            self.make(4, 4, SignalKind.SUBJECT, days=2),
            self.make(5, 5, SignalKind.VECTOR, 0.1),
            self.make(2, 2, SignalKind.VECTOR, 0.0, days=1),
        ])
        assert [r.message.id for r in merged] == [4, 3, 2, 5, 1]
        assert merged[2].kind == SignalKind.SENDER

    def test_same_time_breaks_on_uid(self):
        merged = merge_signals([self.make(1, 10, SignalKind.SUBJECT), self.make(2, 11, SignalKind.SUBJECT)])
        assert [r.message.imap_uid for r in merged] == [11, 10]

    def test_limit(self):
        merged = merge_signals([self.make(i, i, SignalKind.SUBJECT) for i in range(10)], limit=3)
        assert len(merged) == 3

    def test_result_dict(self):
        result = SearchResult.from_signal(self.make(1, 7, SignalKind.SUBJECT))
        data = result.to_dict()
        assert data["uid"] == 7
        assert data["received"] == (BASE).isoformat()
        assert data["signal"] == "subject"
