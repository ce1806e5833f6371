"""
Text cleanup for values headed to PostgreSQL or the tokenizer.

PostgreSQL text columns reject NUL (0x00), and strings decoded with
surrogateescape (or built from broken JSON) may carry unpaired UTF-16
surrogates that cannot be encoded as UTF-8.
"""
from typing import Optional


def strip_invalid_surrogates(value: str) -> str:
    """Join surrogate pairs into their code point and drop lone surrogates."""
    return value.encode('utf-16-le', 'surrogatepass').decode('utf-16-le', 'ignore')


def clean_text(value: Optional[str]) -> Optional[str]:
    """Remove NUL characters and unpaired surrogates. None and '' pass through."""
    if not value:
        return value
    return strip_invalid_surrogates(value.replace('\x00', ''))


def clean_text_or_empty(value: Optional[str]) -> str:
    return clean_text(value) or ""
