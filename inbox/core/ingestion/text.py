# inbox/core/ingestion/text.py
"""Text helpers shared by normalizers and senders."""
from __future__ import annotations

import re

from inbox.core.ingestion.domain import Channel

TRUNCATION_MARKER = "[truncated]"

# Max characters a provider accepts in one text message
CHANNEL_MAX_LENGTH: dict[Channel, int] = {
    Channel.WHATSAPP: 4096,
    Channel.INSTAGRAM: 1000,
    Channel.FACEBOOK: 2000,
    Channel.TIKTOK: 1000,
}

# A sentence boundary must fall in the last 20% of the budget to be used
_SENTENCE_WINDOW = 0.8
# A word boundary must fall in the last half of the budget to be used
_WORD_WINDOW = 0.5

_SENTENCE_END = re.compile(r"[.!?…](?=\s)|\n")
_NON_PHONE_CHARS = re.compile(r"[^\d+]")


def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number to ``+<digits>``.

    >>> normalize_phone("52 1 55-1234-5678")
    '+5215512345678'
    """
    normalized = _NON_PHONE_CHARS.sub("", phone or "")
    normalized = "+" + normalized.lstrip("+")
    return normalized


def truncate_text(text: str, max_length: int, marker: str = TRUNCATION_MARKER) -> str:
    """
    Cut ``text`` to at most ``max_length`` characters, ending with ``marker``.

    Prefers the last sentence end close to the limit, then the last word
    boundary, and only then a hard cut. Text that already fits is returned
    unchanged.
    """
    if len(text) <= max_length:
        return text

    budget = max_length - len(marker) - 1
    if budget <= 0:
        return text[:max_length]

    window = text[:budget + 1]

    cut = None
    sentence_ends = [m.end() for m in _SENTENCE_END.finditer(window) if m.end() <= budget]
    if sentence_ends and sentence_ends[-1] >= budget * _SENTENCE_WINDOW:
        cut = sentence_ends[-1]
    else:
        space = max(window.rfind(" "), window.rfind("\t"))
        if space >= budget * _WORD_WINDOW:
            cut = space

    head = text[:cut] if cut is not None else text[:budget]
    return f"{head.rstrip()} {marker}"


def truncate_for_channel(channel: Channel, text: str) -> str:
    """Truncate to the provider's max message length for ``channel``."""
    return truncate_text(text, CHANNEL_MAX_LENGTH[Channel(channel)])
