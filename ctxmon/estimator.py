"""Heuristic token estimator for raw conversation text."""

from __future__ import annotations

import math

ASCII_CHARS_PER_TOKEN = 4  # rough heuristic
WIDE_CHARS_PER_TOKEN = 1.5  # CJK and other non-ASCII text packs denser


def estimate_tokens(text: str | None) -> int:
    """Approximate the token count of *text*.

    ASCII characters count at ~4 per token, everything else at ~1.5 per
    token.  Empty or missing text is 0.
    """
    if not text:
        return 0
    ascii_chars = 0
    wide_chars = 0
    for ch in text:
        if ord(ch) < 128:
            ascii_chars += 1
        else:
            wide_chars += 1
    return math.ceil(ascii_chars / ASCII_CHARS_PER_TOKEN + wide_chars / WIDE_CHARS_PER_TOKEN)
