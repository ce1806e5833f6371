"""
Email-side models shared by the connection manager, page loader and session.
"""
import re
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

# Whole-word names servers use for the deleted-items folder
TRASH_NAME_PATTERN = re.compile(r"\b(trash|deleted|bin)\b", re.IGNORECASE)


class AccountSettings(BaseModel):
    """Connection parameters for one IMAP account (password passed separately)"""
    server: str
    username: str
    port: int = 993
    use_ssl: bool = True
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.username


class FolderInfo(BaseModel):
    """A selectable folder as reported by LIST + STATUS"""
    full_name: str
    display_name: str
    flags: List[str] = Field(default_factory=list)
    message_count: int = 0
    unread_count: int = 0
    uid_validity: Optional[int] = None
    uid_next: Optional[int] = None

    @property
    def is_inbox(self) -> bool:
        return self.full_name.upper() == "INBOX"

    @property
    def is_trash(self) -> bool:
        if "\\Trash" in self.flags:
            return True
        return TRASH_NAME_PATTERN.search(self.display_name) is not None


class MessageSummary(BaseModel):
    """Envelope-level summary of one message, as shown in a folder list"""
    uid: int
    subject: str = ""
    from_name: str = ""
    from_address: str = ""
    received: datetime
    message_id: str = ""

    @property
    def display_subject(self) -> str:
        return self.subject or "(No subject)"

    @property
    def sender_display(self) -> str:
        return self.from_name or self.from_address or "(Unknown sender)"


class Page(BaseModel):
    """One page of a folder listing"""
    folder: str
    messages: List[MessageSummary] = Field(default_factory=list)
    has_more: bool = False
