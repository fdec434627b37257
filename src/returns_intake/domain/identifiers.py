"""Checksummed product identifiers recovered from barcode scans.

Two shapes are recognised:

- short form: 10 characters, nine digits plus a digit or ``X`` check
  character, weighted sum ``(10 - i) * value`` divisible by 11;
- long form: 13 digits, alternating weights 1 and 3, sum divisible by 10.

None of these functions raise; a miss is reported as ``False``/``None``.
"""

from __future__ import annotations

import re
from typing import Optional

_CANDIDATE_RE = re.compile(r"[\dXx\- ]{10,17}")
_SEPARATORS_RE = re.compile(r"[\s\-]")
_SHORT_FORM_RE = re.compile(r"^\d{9}[\dX]$")
_LONG_FORM_RE = re.compile(r"^\d{13}$")


def _char_value(c: str) -> int:
    return 10 if c == "X" else int(c)


def is_valid_short_form(s: str) -> bool:
    if not isinstance(s, str) or not _SHORT_FORM_RE.match(s):
        return False
    total = sum((10 - i) * _char_value(c) for i, c in enumerate(s))
    return total % 11 == 0


def is_valid_long_form(s: str) -> bool:
    if not isinstance(s, str) or not _LONG_FORM_RE.match(s):
        return False
    total = sum(int(c) * (1 if i % 2 == 0 else 3) for i, c in enumerate(s))
    return total % 10 == 0


def normalize_candidate(candidate: str) -> str:
    return _SEPARATORS_RE.sub("", candidate).upper()


def extract_identifier(raw_text: Optional[str]) -> Optional[str]:
    """Return the first checksummed identifier found in decoded text.

    ``None`` means the text should be treated as an opaque payload.
    """
    if not raw_text:
        return None
    for match in _CANDIDATE_RE.finditer(raw_text):
        norm = normalize_candidate(match.group(0))
        if len(norm) == 13 and is_valid_long_form(norm):
            return norm
        if len(norm) == 10 and is_valid_short_form(norm):
            return norm
    return None
