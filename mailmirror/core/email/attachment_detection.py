"""
Centralized attachment detection logic.

The backfill loop and the MCP attachment listing both go through these
functions so that "what counts as an attachment" stays consistent.

A part is an attachment candidate when it is a leaf that is not the text or
HTML body and either carries a Content-Disposition (attachment or inline) or
is an embedded message/rfc822. Inline images referenced only by Content-ID
and without a disposition are part of the HTML body, not attachments.
"""
from email.header import decode_header, make_header
from email.errors import HeaderParseError
from email.message import EmailMessage as Message
from typing import Iterator, List
import logging

logger = logging.getLogger(__name__)

BODY_CONTENT_TYPES = frozenset({'text/plain', 'text/html'})

DEFAULT_CONTENT_TYPE = 'application/octet-stream'
DEFAULT_FILENAME = 'attachment'


def iter_leaf_parts(msg: Message) -> Iterator[Message]:
    """
    Yield leaf MIME parts in document order.

    Unlike Message.walk(), an embedded message/rfc822 is yielded as a single
    leaf and its own parts are not visited.
    """
    for part in msg.iter_parts():
        if part.get_content_type() == 'message/rfc822':
            yield part
        elif part.is_multipart():
            yield from iter_leaf_parts(part)
        else:
            yield part


def is_attachment_part(part: Message) -> bool:
    """
    Determine if a leaf MIME part should be stored as an attachment.

    Args:
        part: A part yielded by iter_leaf_parts()

    Returns:
        True if this part should be treated as an attachment
    """
    content_type = part.get_content_type()

    # Embedded messages (forwarded as attachment) are always kept
    if content_type == 'message/rfc822':
        return True

    if part.get_content_maintype() == 'multipart':
        return False

    if content_type in BODY_CONTENT_TYPES:
        return False

    return part.get_content_disposition() is not None


def get_attachment_parts(msg: Message) -> List[Message]:
    """
    Extract all attachment parts from a parsed message.

    A single-part message never has attachments: its only part is the body.
    """
    if not msg.is_multipart():
        return []
    return [part for part in iter_leaf_parts(msg) if is_attachment_part(part)]


def _decode_filename(filename: str) -> str:
    # Some clients leave RFC 2047 encoded-words in parameters
    if '=?' not in filename:
        return filename.strip()
    try:
        return str(make_header(decode_header(filename))).strip()
    except (HeaderParseError, LookupError, UnicodeDecodeError) as e:
        logger.debug(f"Could not decode attachment filename {filename!r}: {e}")
        return filename.strip()


def attachment_filename(part: Message) -> str:
    """Content-Disposition filename, then Content-Type name, then 'attachment'."""
    filename = part.get_filename()
    if filename:
        filename = _decode_filename(str(filename))
    return filename or DEFAULT_FILENAME


def attachment_content_type(part: Message) -> str:
    return part.get_content_type() or DEFAULT_CONTENT_TYPE
