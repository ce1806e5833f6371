"""
HTML sanitizer for message bodies.

Removes active content (scripts, frames, forms, media), strips event
handlers and inline styles, keeps a small attribute allow-list, and blocks
remote resources so that opening a message never phones home. Every removal
that matters to the user is reported as a BlockedResource.
"""
import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)


class BlockedReason(str, Enum):
    DISALLOWED_TAG = "disallowed_tag"
    DISALLOWED_ATTRIBUTE = "disallowed_attribute"
    EXTERNAL_CONTENT = "external_content"
    INVALID_SCHEME_OR_HOST = "invalid_scheme_or_host"
    PRIVATE_NETWORK = "private_network"


@dataclass
class BlockedResource:
    url: str
    reason: BlockedReason


@dataclass
class SanitizedHtml:
    html: str
    blocked_resources: List[BlockedResource] = field(default_factory=list)


DANGEROUS_ELEMENTS = frozenset({
    'script', 'style', 'iframe', 'frame', 'frameset', 'object', 'embed', 'link',
    'meta', 'form', 'input', 'button', 'video', 'audio', 'source', 'canvas',
})

# Elements whose URL attribute would fetch content on render
EXTERNAL_CONTENT_ELEMENTS = frozenset({'img', 'video', 'audio', 'iframe', 'frame', 'source', 'link'})

ALLOWED_ATTRIBUTES = {
    'a': frozenset({'href', 'title', 'target', 'rel'}),
    'img': frozenset({'src', 'alt', 'title'}),
    '*': frozenset({'title'}),
}

URL_ATTRIBUTES = frozenset({'href', 'src', 'background', 'action'})

_PRIVATE_V4_NETWORKS = [
    ipaddress.ip_network('10.0.0.0/8'),
    ipaddress.ip_network('172.16.0.0/12'),
    ipaddress.ip_network('192.168.0.0/16'),
    ipaddress.ip_network('127.0.0.0/8'),
    ipaddress.ip_network('100.64.0.0/10'),  # carrier-grade NAT
]

_PRIVATE_V6_NETWORKS = [
    ipaddress.ip_network('fc00::/7'),   # unique local
    ipaddress.ip_network('fe80::/10'),  # link-local
]


def is_private_host(host: Optional[str]) -> bool:
    """True for empty hosts, localhost, *.local and private/loopback IP literals."""
    if not host:
        return True

    host = host.lower()
    if host == 'localhost' or host.endswith('.local'):
        return True

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False

    if ip.is_loopback:
        return True
    networks = _PRIVATE_V4_NETWORKS if ip.version == 4 else _PRIVATE_V6_NETWORKS
    return any(ip in network for network in networks)


def _evaluate_url(value: str, element_name: str) -> Optional[BlockedReason]:
    """Return None when the URL may stay, else the reason it is blocked."""
    value = (value or "").strip()
    if not value:
        return BlockedReason.EXTERNAL_CONTENT

    # In-page anchors and inline data are safe
    if value.startswith('#') or value.lower().startswith('data:'):
        return None

    try:
        parts = urlsplit(value)
        host = parts.hostname
    except ValueError:
        return BlockedReason.INVALID_SCHEME_OR_HOST

    scheme = parts.scheme.lower()
    if not scheme:
        # Relative URLs have no meaningful base inside a mail body
        return BlockedReason.EXTERNAL_CONTENT

    if scheme in ('http', 'https'):
        if is_private_host(host):
            return BlockedReason.PRIVATE_NETWORK
        if element_name in EXTERNAL_CONTENT_ELEMENTS:
            return BlockedReason.EXTERNAL_CONTENT
        return None

    # javascript:, file:, and everything else
    return BlockedReason.INVALID_SCHEME_OR_HOST


def _sanitize_attributes(tag: Tag, blocked: List[BlockedResource]) -> None:
    allowed = ALLOWED_ATTRIBUTES.get(tag.name, ALLOWED_ATTRIBUTES['*'])

    for name in list(tag.attrs):
        lowered = name.lower()
        if lowered.startswith('on') or lowered == 'style':
            del tag.attrs[name]
            blocked.append(BlockedResource(name, BlockedReason.DISALLOWED_ATTRIBUTE))
            continue

        if lowered not in allowed:
            del tag.attrs[name]
            continue

        if lowered not in URL_ATTRIBUTES:
            continue

        value = tag.attrs[name]
        if isinstance(value, list):
            value = " ".join(value)
        reason = _evaluate_url(value, tag.name)
        if reason is not None:
            del tag.attrs[name]
            blocked.append(BlockedResource(value, reason))


def _clean_node(node: Tag, blocked: List[BlockedResource]) -> None:
    for child in list(node.children):
        if not isinstance(child, Tag):
            continue

        if child.name in DANGEROUS_ELEMENTS:
            blocked.append(BlockedResource(child.name, BlockedReason.DISALLOWED_TAG))
            child.decompose()
            continue

        _sanitize_attributes(child, blocked)
        _clean_node(child, blocked)


def sanitize_html(html: Optional[str]) -> SanitizedHtml:
    """
    Sanitize an HTML body.

    Args:
        html: Raw HTML (may be None or blank)

    Returns:
        SanitizedHtml with the cleaned markup and the list of blocked resources
    """
    if not html or not html.strip():
        return SanitizedHtml("")

    soup = BeautifulSoup(html, 'html.parser')
    blocked: List[BlockedResource] = []
    _clean_node(soup, blocked)

    if blocked:
        logger.debug(f"Sanitizer blocked {len(blocked)} resource(s)")
    return SanitizedHtml(soup.decode(), blocked)


def html_to_text(html: Optional[str]) -> str:
    """Visible text of an HTML fragment with line breaks flattened to spaces."""
    if not html or not html.strip():
        return ""

    soup = BeautifulSoup(html, 'html.parser')
    for element in soup(['script', 'style']):
        element.decompose()
    text = soup.get_text()
    return text.replace('\r', ' ').replace('\n', ' ')
