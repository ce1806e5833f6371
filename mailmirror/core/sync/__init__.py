"""Sync session and its background loops"""
from .session import SyncSession, MessageBodyView, AttachmentInfo
from .backfill import BackfillLoop
from .embedding_loop import EmbeddingLoop
from .status import StatusChannel, SyncStatus

__all__ = [
    "SyncSession",
    "MessageBodyView",
    "AttachmentInfo",
    "BackfillLoop",
    "EmbeddingLoop",
    "StatusChannel",
    "SyncStatus",
]
