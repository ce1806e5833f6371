"""
Pydantic schemas for MCP tool responses.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict


class MessageResult(BaseModel):
    """Single message in search results."""
    model_config = ConfigDict(from_attributes=True)

    id: int = Field(description="Local message id")
    folder: str = Field(description="Full IMAP folder name")
    uid: int = Field(description="IMAP UID within the folder")
    message_id: str = Field(description="RFC822 Message-ID (or uid:<uid>@<server>)")
    subject: str = Field(description="Message subject")
    sender: str = Field(description="Sender display name, else address")
    sender_address: str = Field(description="Sender email address")
    preview: str = Field(description="First 240 characters of the body")
    received: Optional[str] = Field(None, description="Received timestamp (ISO format, UTC)")
    score: float = Field(description="Signal score, lower is better (0 for exact matches)")
    signal: str = Field(description="Signal that found the message: subject, sender, vector or recent")


class SearchResponse(BaseModel):
    """Response for search operations."""
    query: str = Field(description="Original search query")
    mode: str = Field(description="Search mode requested")
    total: int = Field(description="Number of results returned")
    results: List[MessageResult] = Field(description="Search results, best first")
    next_cursor: Optional[int] = Field(None, description="Pass as cursor to continue below the lowest UID")
    warning: Optional[str] = Field(None, description="Set when part of the search was unavailable")


class BlockedResourceInfo(BaseModel):
    url: str
    reason: str


class MessageBodyResponse(BaseModel):
    """Sanitized body with header summary."""
    folder: str
    uid: int
    subject: str
    from_display: str = Field(description="\"name <address>\" or address")
    from_address: str
    received: Optional[str] = None
    to: str = ""
    cc: Optional[str] = None
    bcc: Optional[str] = None
    html: str = Field(description="Sanitized HTML body")
    blocked_resources: List[BlockedResourceInfo] = Field(default_factory=list)


class FolderResult(BaseModel):
    full_name: str
    display_name: str
    message_count: int = 0
    unread_count: int = 0


class AttachmentResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    file_name: str
    content_type: str
    disposition: Optional[str] = None
    size_bytes: int
    sha256: str
    storage_key: str
    base64_data: Optional[str] = Field(None, description="Content (possibly truncated) when include_data is set")


class AccountResult(BaseModel):
    """Mirrored account; no credentials."""
    id: int
    display_name: str
    server: str
    username: str
    last_synced_at: Optional[str] = None


class SchemaSnapshot(BaseModel):
    tables: List[str] = Field(description="\"table (column, ...)\" per mirror table")
