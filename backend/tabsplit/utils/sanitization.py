"""
Input sanitization for finalize payloads.

Display text (item names, usernames) is trimmed, stripped of control
characters, HTML-escaped and capped.  Identifiers (participant unique
ids, item ids) are matched against the directory and the allocation
list, so they are only trimmed and stripped of control characters.
"""

import re
from typing import Optional

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")

MAX_TEXT_LENGTH = 200


def clean_identifier(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _CONTROL_CHARS.sub("", value.strip())


def clean_text(value: Optional[str], max_length: int = MAX_TEXT_LENGTH) -> Optional[str]:
    if value is None:
        return None
    value = clean_identifier(value)
    value = value.replace("<", "&lt;").replace(">", "&gt;")
    return value[:max_length]
