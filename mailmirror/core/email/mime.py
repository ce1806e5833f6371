"""
RFC 822 parsing for the backfill loop.

Turns the raw bytes of a fetched message into the header fields of an
ImapMessage row, the content of its MessageBody row, and the list of
attachment parts. Malformed or missing headers default to empty strings;
parsing never raises for bad input.
"""
import email
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import EmailMessage
from email.utils import parseaddr, parsedate_to_datetime
from typing import BinaryIO, Dict, List, Optional

from .attachment_detection import (
    attachment_content_type,
    attachment_filename,
    get_attachment_parts,
)
from .html_sanitizer import sanitize_html
from .text_cleaner import clean_text, clean_text_or_empty

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 240


@dataclass
class AttachmentPart:
    file_name: str
    content_type: str
    disposition: Optional[str]
    part: EmailMessage = field(repr=False)

    def open(self) -> BinaryIO:
        """Decoded content as a binary stream (embedded messages are re-serialized)."""
        if self.content_type == 'message/rfc822':
            payload = self.part.get_payload()
            inner = payload[0] if isinstance(payload, list) and payload else None
            data = inner.as_bytes() if inner is not None else b""
        else:
            data = self.part.get_payload(decode=True) or b""
        return io.BytesIO(data)


@dataclass
class ParsedMessage:
    message_id: str
    subject: str
    from_name: str
    from_address: str
    received_utc: datetime
    plain_text: Optional[str]
    html_text: Optional[str]
    headers: Dict[str, List[str]]
    attachments: List[AttachmentPart] = field(default_factory=list)

    @property
    def sanitized_html(self) -> Optional[str]:
        if not self.html_text or not self.html_text.strip():
            return None
        return clean_text(sanitize_html(self.html_text).html)

    @property
    def preview(self) -> str:
        source = self.plain_text if self.plain_text and self.plain_text.strip() else self.subject
        return build_preview(source)


def build_preview(text: Optional[str]) -> str:
    """Single line, trimmed, at most PREVIEW_LENGTH characters."""
    if not text:
        return ""
    flattened = text.replace('\r', ' ').replace('\n', ' ').strip()
    return clean_text_or_empty(flattened[:PREVIEW_LENGTH]).strip()


def decode_header_value(value: Optional[str]) -> str:
    """Decode RFC 2047 encoded-words and unfold; fall back to the raw value."""
    if not value:
        return ""
    value = str(value)
    unfolded = value.replace('\r\n', '').replace('\n', '')
    try:
        decoded = str(make_header(decode_header(unfolded)))
    except (HeaderParseError, LookupError, UnicodeDecodeError, ValueError):
        decoded = unfolded
    return clean_text_or_empty(decoded)


def _decode_part_text(part: Optional[EmailMessage]) -> Optional[str]:
    if part is None:
        return None
    payload = part.get_payload(decode=True)
    if not payload:
        return None
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        # Unknown charset label
        return payload.decode('utf-8', errors='replace')


def _parse_date(value: str, fallback: Optional[datetime]) -> datetime:
    if value:
        try:
            parsed = parsedate_to_datetime(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unparseable Date header: {value!r}")
    return fallback or datetime.now(timezone.utc)


def _header_map(msg: EmailMessage) -> Dict[str, List[str]]:
    headers: Dict[str, List[str]] = {}
    for name, value in msg.raw_items():
        headers.setdefault(clean_text_or_empty(name), []).append(decode_header_value(value))
    return headers


def parse_message(
    raw: bytes,
    uid: int,
    received_fallback: Optional[datetime] = None,
) -> ParsedMessage:
    """
    Parse raw RFC 822 bytes.

    Args:
        raw: Full message as returned by FETCH BODY.PEEK[]
        uid: IMAP UID (for log messages)
        received_fallback: Timestamp to use when the Date header is unusable

    Returns:
        ParsedMessage
    """
    msg = email.message_from_bytes(raw or b"", policy=policy.default)

    headers = _header_map(msg)

    def first(name: str) -> str:
        for key, values in headers.items():
            if key.lower() == name:
                return values[0] if values else ""
        return ""

    from_name, from_address = parseaddr(first('from'))
    message_id = first("message-id").strip()

    try:
        plain_part = msg.get_body(preferencelist=('plain',))
        html_part = msg.get_body(preferencelist=('html',))
    except (KeyError, TypeError, ValueError) as e:
        logger.debug(f"UID {uid}: unable to locate body parts: {e}")
        plain_part = html_part = None

    try:
        attachment_parts = get_attachment_parts(msg)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"UID {uid}: unable to walk MIME structure: {e}")
        attachment_parts = []

    attachments = [
        AttachmentPart(
            file_name=clean_text_or_empty(attachment_filename(part)),
            content_type=clean_text_or_empty(attachment_content_type(part)),
            disposition=clean_text(decode_header_value(part.get('Content-Disposition'))) or None,
            part=part,
        )
        for part in attachment_parts
    ]

    return ParsedMessage(
        message_id=clean_text_or_empty(message_id),
        subject=first('subject'),
        from_name=clean_text_or_empty(from_name.strip().strip('"').strip()),
        from_address=clean_text_or_empty(from_address),
        received_utc=_parse_date(first('date'), received_fallback),
        plain_text=clean_text(_decode_part_text(plain_part)),
        html_text=clean_text(_decode_part_text(html_part)),
        headers=headers,
        attachments=attachments,
    )
