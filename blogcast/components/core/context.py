"""
Log hygiene helpers for user-provided data.
"""

from __future__ import annotations

import re

# Control characters, zero-width marks and bidirectional overrides
_CONTROL_CHAR_PATTERN = re.compile(
    r'[\x00-\x1f\x7f-\x9f'
    r'\u200b-\u200f'  # Zero-width and direction marks
    r'\u202a-\u202e'  # Bidirectional text formatting
    r'\u2066-\u2069'  # Isolate formatting characters
    r'\ufeff]'  # BOM
)


def sanitize_log_data(data: object, max_length: int = 100) -> str:
    """
    Sanitize user-provided data before logging.

    Truncates first so escaping cannot push the output over `max_length`,
    then strips control characters and escapes quotes and backslashes.

    Args:
        data: Raw user data (converted with str()).
        max_length: Maximum length to include in logs.

    Returns:
        Sanitized, truncated string safe for structured logging.
    """
    text = data if isinstance(data, str) else str(data)
    was_truncated = len(text) > max_length
    truncated = text[:max_length] if was_truncated else text

    sanitized = _CONTROL_CHAR_PATTERN.sub('', truncated)
    sanitized = sanitized.replace('\\', '\\\\')
    sanitized = sanitized.replace('"', '\\"')

    if was_truncated:
        return sanitized + "..."
    return sanitized
