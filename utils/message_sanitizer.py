"""
Chat text sanitization: strips markup and control characters from user text
before it is stored.
"""

import logging

import bleach

from core.config import MESSAGE_SANITIZE_ENABLED

logger = logging.getLogger(__name__)


def sanitize_message(message: str, *, enabled: bool = MESSAGE_SANITIZE_ENABLED) -> str:
    """
    Return the text with HTML removed and surrounding whitespace trimmed.

    An input that consists only of markup sanitizes to an empty string, which
    callers treat as an empty message.
    """
    if not message:
        return ""

    cleaned = message.strip()
    if not enabled:
        return cleaned

    # tags=[] with strip=True drops every tag instead of escaping it
    sanitized = bleach.clean(cleaned, tags=[], strip=True)
    sanitized = "".join(
        char for char in sanitized if char.isprintable() or char in ("\n", "\r", "\t")
    )
    return sanitized.strip()
