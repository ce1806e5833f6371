"""
Background embedding loop: embeds bodied messages that have no vector yet,
newest first, one capped batch per iteration.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from sqlalchemy.orm import Session

from mailmirror.core.database.repository import MailRepository
from mailmirror.core.search.embeddings import EmbeddingBatcher, build_embedding_text
from mailmirror.core.search.runtime import EmbeddingUnavailableError

logger = logging.getLogger(__name__)


class EmbeddingLoop:
    """
    Polls for messages needing embeddings.

    Sleeps `active_interval` after a batch that found work and
    `idle_interval` when there was nothing to do or the runtime failed.
    """

    def __init__(
        self,
        batcher: EmbeddingBatcher,
        session_factory: Callable[[], Session],
        batch_cap: int = 64,
        idle_interval: float = 60.0,
        active_interval: float = 1.0,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.batcher = batcher
        self.session_factory = session_factory
        self.batch_cap = batch_cap
        self.idle_interval = idle_interval
        self.active_interval = active_interval
        self._on_error = on_error
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        logger.info("Embedding loop started")
        while not self._stop.is_set():
            delay = self.idle_interval
            try:
                if await self.run_once():
                    delay = self.active_interval
            except EmbeddingUnavailableError as e:
                logger.warning(f"Embedding runtime unavailable: {e}")
                if self._on_error:
                    self._on_error(f"Embeddings unavailable: {e}")
            except Exception as e:
                logger.error(f"Embedding batch failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Embedding loop stopped")

    async def run_once(self) -> int:
        """
        Embed one batch.

        Returns:
            Number of messages embedded
        """
        pending = await asyncio.to_thread(self._load_pending)
        if not pending:
            return 0

        ids = [message_id for message_id, _ in pending]
        vectors = await asyncio.to_thread(self.batcher.embed_batch, [text for _, text in pending])
        await asyncio.to_thread(self._store, dict(zip(ids, vectors)))
        logger.info(f"Embedded {len(ids)} message(s)")
        return len(ids)

    def _load_pending(self) -> List[Tuple[int, str]]:
        with self.session_factory() as db:
            rows = MailRepository(db).messages_needing_embedding(self.batch_cap)
            return [(message.id, build_embedding_text(message, body)) for message, body in rows]

    def _store(self, vectors: Dict[int, np.ndarray]) -> None:
        with self.session_factory() as db:
            MailRepository(db).insert_embeddings(vectors, self.batcher.model_version)
