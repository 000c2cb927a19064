from __future__ import annotations

import math

# Used by batch sizing and processing estimates alike.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Return the approximate token count for text (4 characters per token, rounded up)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def tokens_to_chars(tokens: int) -> int:
    return max(0, int(tokens)) * CHARS_PER_TOKEN
