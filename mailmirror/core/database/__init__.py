"""Database module: local mirror schema, engine, and the upsert repository"""
from .models import (
    Base, ImapAccount, ImapFolder, ImapMessage, MessageBody,
    MessageAttachment, MessageEmbedding, EMBEDDING_DIMENSION, schema_snapshot,
)
from .connection import init_db, create_tables, get_session_factory

__all__ = [
    'Base',
    'ImapAccount',
    'ImapFolder',
    'ImapMessage',
    'MessageBody',
    'MessageAttachment',
    'MessageEmbedding',
    'EMBEDDING_DIMENSION',
    'schema_snapshot',
    'init_db',
    'create_tables',
    'get_session_factory',
]
