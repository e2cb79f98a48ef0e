"""String helpers shared by every pipeline stage."""

import re
from typing import Any, Iterable, List

_WHITESPACE_RE = re.compile(r'\s+')


def normalize_tag(value: Any) -> str:
    """
    Lowercase, trim and collapse internal whitespace runs to a single space.

    This is the join key between all stage outputs. Non-string input is
    stringified first (None becomes the empty string), so it never raises.
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return _WHITESPACE_RE.sub(' ', value.lower()).strip()


def dedupe_preserve_order(values: Iterable[str]) -> List[str]:
    """Drop repeated values, keeping the first occurrence of each."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
