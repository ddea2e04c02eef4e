"""Sanitization helpers for client-supplied values."""

from __future__ import annotations

import re

# C0/C1 controls, DEL, Unicode line/paragraph separators, bidi overrides
# and zero-width characters.
CONTROL_CHARS_RE = re.compile(
    r"[\x00-\x1f\x7f-\x9f\u2028\u2029\u200b-\u200f\u202a-\u202e\u2066-\u2069\ufeff]"
)


def strip_control_chars(value: str) -> str:
    """Strip all control characters from a string."""
    return CONTROL_CHARS_RE.sub("", value)


def clean_header_value(value: str, max_length: int = 8192) -> str:
    """Truncate and strip control characters from a header value before use."""
    return strip_control_chars(value[:max_length]).strip()
