"""
Text normalization for chat messages.

Conservative on purpose: normalize unicode, drop control characters, collapse
runs of spaces and blank lines. Message content is otherwise kept as written
so re-rendering an unchanged message is byte-identical.
"""

from __future__ import annotations

import re
import unicodedata
from typing import List


_RE_SPACES = re.compile(r"[ \t\u00a0]+")
_RE_MANY_NEWLINES = re.compile(r"\n{3,}")
_RE_CONTROL = re.compile(r"[\u0000-\u0008\u000b\u000c\u000e-\u001f\u007f\u200b\u200e\u200f\ufeff]")
_RE_TOK = re.compile(r"\b\w+\b", flags=re.UNICODE)


def normalize_message_text(text: str) -> str:
    if not text:
        return ""

    t = unicodedata.normalize("NFKC", text).replace("\u00ad", "")
    t = t.replace("\r\n", "\n").replace("\r", "\n")
    t = _RE_CONTROL.sub("", t)
    t = _RE_SPACES.sub(" ", t)

    # Trim line edges, keep line breaks
    t = "\n".join(line.strip() for line in t.split("\n"))
    t = _RE_MANY_NEWLINES.sub("\n\n", t).strip()

    return t


def simple_tokenize(text: str) -> List[str]:
    return _RE_TOK.findall((text or "").lower())


def count_tokens(text: str) -> int:
    return len(simple_tokenize(text))


def speaker_label(name: str) -> str:
    """Single-line speaker label safe for 'speaker: text' transcripts."""
    label = normalize_message_text(name).replace("\n", " ").replace(":", "")
    return label or "unknown"
