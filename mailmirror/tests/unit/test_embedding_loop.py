"""
Test the background embedding loop.
"""
import asyncio
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest
from sqlalchemy import select

from mailmirror.core.database.models import MessageEmbedding
from mailmirror.core.database.repository import MailRepository
from mailmirror.core.email.mime import parse_message
from mailmirror.core.email.models import AccountSettings, FolderInfo
from mailmirror.core.search.embeddings import EmbeddingBatcher
from mailmirror.core.search.runtime import EmbeddingUnavailableError
from mailmirror.core.sync.embedding_loop import EmbeddingLoop


@pytest.fixture
def bodied(session_factory, message_factory):
    """Store ten messages with bodies; returns their ids keyed by uid."""
    with session_factory() as db:
        repo = MailRepository(db)
        account = repo.get_or_create_account(AccountSettings(server="imap.test.com", username="me"))
        folder_id = repo.upsert_folders(account.id, [FolderInfo(full_name="INBOX", display_name="INBOX")])["INBOX"].id
        ids = {}
        for message in message_factory(10):
            parsed = parse_message(message.raw, message.uid)
            row = repo.upsert_parsed_message(folder_id, message.uid, parsed)
            ids[message.uid] = row.id
            repo.store_content(row, parsed)
    return ids


@pytest.fixture
def batcher(fake_runtime):
    return EmbeddingBatcher(fake_runtime, max_seq_len=16, token_budget=64)


def stored(session_factory):
    with session_factory() as db:
        return {row.message_id: row for row in db.execute(select(MessageEmbedding)).scalars()}


class TestRunOnce:

    async def test_newest_first_in_capped_batches(self, session_factory, bodied, batcher):
        loop = EmbeddingLoop(batcher, session_factory, batch_cap=4)

        assert await loop.run_once() == 4
        assert set(stored(session_factory)) == {bodied[uid] for uid in (10, 9, 8, 7)}

        assert await loop.run_once() == 4
        assert await loop.run_once() == 2
        assert await loop.run_once() == 0
        assert len(stored(session_factory)) == 10

    async def test_vectors_are_normalized_and_versioned(self, session_factory, bodied, batcher):
        await EmbeddingLoop(batcher, session_factory).run_once()

        for row in stored(session_factory).values():
            vector = np.asarray(row.vector.to_list() if hasattr(row.vector, "to_list") else row.vector,
                                dtype=np.float32)
            assert vector.shape == (1024,)
            assert abs(np.linalg.norm(vector) - 1.0) <= 1e-2
            assert row.model_version == "fake-embedding"

    async def test_runtime_failure_stores_nothing(self, session_factory, bodied, batcher, fake_runtime):
        fake_runtime.fail = True
        with pytest.raises(EmbeddingUnavailableError):
            await EmbeddingLoop(batcher, session_factory).run_once()
        assert stored(session_factory) == {}


class TestRun:
    """Test the polling loop"""

    async def test_unavailable_runtime_reported_and_retried(self, session_factory, bodied, batcher, fake_runtime):
        fake_runtime.fail = True
        errors = []
        loop = EmbeddingLoop(batcher, session_factory, idle_interval=0.01, active_interval=0.01,
                             on_error=errors.append)
        embedded = asyncio.Event()
        real_run_once = loop.run_once

        async def run_once():
            count = await real_run_once()
            if count:
                embedded.set()
            return count

        loop.run_once = run_once
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.1)
        fake_runtime.fail = False
        await asyncio.wait_for(embedded.wait(), timeout=5)
        loop.stop()
        await asyncio.wait_for(task, timeout=5)

        assert errors
        assert errors[0].startswith("Embeddings unavailable")
        assert len(stored(session_factory)) == 10

    async def test_idle_interval_when_no_work(self, session_factory):
        loop = EmbeddingLoop(Mock(), session_factory, idle_interval=3600, active_interval=0)
        loop.run_once = AsyncMock(return_value=0)

        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        loop.stop()
        await asyncio.wait_for(task, timeout=5)

        assert loop.run_once.await_count == 1

    async def test_active_interval_after_work(self, session_factory):
        loop = EmbeddingLoop(Mock(), session_factory, idle_interval=3600, active_interval=0)
        results = iter([5, 5, 0])
        loop.run_once = AsyncMock(side_effect=lambda: next(results))

        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        loop.stop()
        await asyncio.wait_for(task, timeout=5)

        assert loop.run_once.await_count == 3
