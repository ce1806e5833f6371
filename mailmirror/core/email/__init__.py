"""IMAP access, MIME parsing and HTML sanitizing"""
from .models import AccountSettings, FolderInfo, MessageSummary, Page
from .connection_manager import (
    ConnectionManager,
    IMAPConnectionError,
    NotConnectedError,
    AuthenticationError,
    FolderNotFoundError,
)
from .page_loader import FolderPageLoader
from .mime import ParsedMessage, parse_message
from .html_sanitizer import SanitizedHtml, BlockedResource, sanitize_html

__all__ = [
    "AccountSettings",
    "FolderInfo",
    "MessageSummary",
    "Page",
    "ConnectionManager",
    "IMAPConnectionError",
    "NotConnectedError",
    "AuthenticationError",
    "FolderNotFoundError",
    "FolderPageLoader",
    "ParsedMessage",
    "parse_message",
    "SanitizedHtml",
    "BlockedResource",
    "sanitize_html",
]
