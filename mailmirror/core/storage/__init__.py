"""Attachment blob storage"""
from .blob_store import BlobStore, StoredBlob

__all__ = ['BlobStore', 'StoredBlob']
