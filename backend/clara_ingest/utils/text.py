"""Text processing helpers."""

from __future__ import annotations

import re

WHITESPACE_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Collapse whitespace and strip."""
    return WHITESPACE_RE.sub(" ", text).strip()


def strip_extension(filename: str) -> str:
    """Return the file name without its last extension."""
    head, dot, _ = filename.rpartition(".")
    return head if dot and head else filename
