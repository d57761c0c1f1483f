"""
Message splitting for platform length limits.

Long replies are cut at the most natural boundary that keeps each chunk
under the platform limit: paragraph, then line, then sentence, then word,
and only as a last resort mid-word.

Usage:
    from chatgate.channels.content.splitter import split_text

    for chunk in split_text(reply, limit=CHANNEL_LIMITS["discord"]):
        ...
"""

from __future__ import annotations

# Per-message character limits used when sending replies
CHANNEL_LIMITS = {
    "telegram": 4096,
    "discord": 2000,
    "slack": 3000,
    "whatsapp": 4096,
}

DEFAULT_LIMIT = 2000

# A boundary only counts if it leaves at least this share of the limit
MIN_SPLIT_RATIO = 0.3

SPLIT_DELIMITERS = ("\n\n", "\n", ". ", " ")


def get_limit(channel_type: str) -> int:
    return CHANNEL_LIMITS.get(channel_type, DEFAULT_LIMIT)


def find_split_point(text: str, limit: int) -> int:
    """Return the index at which to cut ``text`` so the head fits ``limit``."""
    if len(text) <= limit:
        return len(text)

    window = text[:limit]
    for delimiter in SPLIT_DELIMITERS:
        index = window.rfind(delimiter)
        if index > limit * MIN_SPLIT_RATIO:
            return index + len(delimiter)

    return limit


def split_text(text: str, limit: int = DEFAULT_LIMIT) -> list[str]:
    """
    Split text into chunks no longer than ``limit``.

    Chunks are stripped at the cut so no chunk starts or ends with the
    whitespace it was split on. Text within the limit is returned as-is.
    """
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break

        split_point = find_split_point(remaining, limit)
        chunks.append(remaining[:split_point].rstrip())
        remaining = remaining[split_point:].lstrip()

    return chunks


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    """Cut text to ``limit`` characters, marking the cut with ``suffix``."""
    if len(text) <= limit:
        return text
    return text[: limit - len(suffix)] + suffix
