"""Split oversized text payloads into transmission-safe batches."""

from __future__ import annotations

import re

from clara_ingest.ingest.types import PAGE_MARKER_PREFIX, Batch

MAX_BATCH_BYTES = 400_000
BATCH_THRESHOLD_BYTES = 1_048_576
LARGE_PAYLOAD_MB = 2
MAX_PAYLOAD_MB = 10

_WORD_RE = re.compile(r"\S+")
_PAGE_MARKER_BYTES = PAGE_MARKER_PREFIX.encode("utf-8")


def utf8_size(text: str) -> int:
    return len(text.encode("utf-8"))


def needs_batching(text: str, threshold_bytes: int = BATCH_THRESHOLD_BYTES) -> bool:
    return utf8_size(text) > threshold_bytes


def split_payload(text: str, max_batch_bytes: int = MAX_BATCH_BYTES) -> list[str]:
    """Split ``text`` into ordered segments of at most ``max_batch_bytes`` UTF-8 bytes.

    Segments are filled up to the budget and never end inside a multi-byte
    character, so ``"".join(split_payload(text, n)) == text`` for every valid
    budget. When a page marker starts in the second half of the window the
    segment ends just before it, so the next batch opens on a page.
    """
    if max_batch_bytes < 1:
        raise ValueError("max_batch_bytes must be >= 1")
    if not text:
        return []
    encoded = text.encode("utf-8")
    if len(encoded) <= max_batch_bytes:
        return [text]

    segments: list[str] = []
    start = 0
    total = len(encoded)
    while start < total:
        cut = min(start + max_batch_bytes, total)
        # Back off continuation bytes (0b10xxxxxx) to land on a character boundary.
        while cut < total and encoded[cut] & 0xC0 == 0x80:
            cut -= 1
        if cut == start:
            raise ValueError(f"max_batch_bytes={max_batch_bytes} is smaller than a single character")
        if cut < total:
            cut = _page_boundary(encoded, start, cut, max_batch_bytes) or cut
        segments.append(encoded[start:cut].decode("utf-8"))
        start = cut
    return segments


def _page_boundary(encoded: bytes, start: int, cut: int, max_batch_bytes: int) -> int | None:
    marker = _PAGE_MARKER_BYTES
    boundary = encoded.rfind(marker, start, min(cut + len(marker), len(encoded)))
    if start + max_batch_bytes // 2 < boundary <= cut:
        return boundary
    return None


def build_batches(text: str, max_batch_bytes: int = MAX_BATCH_BYTES) -> list[Batch]:
    segments = split_payload(text, max_batch_bytes)
    return [Batch(index=idx, total_batches=len(segments), text=segment) for idx, segment in enumerate(segments, start=1)]


def payload_metrics(text: str) -> dict[str, object]:
    """Size summary used in progress reporting and warnings."""
    size = utf8_size(text)
    estimated_mb = size / (1024 * 1024)
    warning = None
    if estimated_mb > MAX_PAYLOAD_MB:
        warning = (
            f"Text is very large ({estimated_mb:.1f}MB). Recommended maximum: {MAX_PAYLOAD_MB}MB. "
            "Consider splitting the document."
        )
    elif estimated_mb > LARGE_PAYLOAD_MB:
        warning = f"Large text ({estimated_mb:.1f}MB). Processing may take a while."
    return {
        "char_count": len(text),
        "word_count": len(_WORD_RE.findall(text)),
        "estimated_mb": round(estimated_mb, 2),
        "is_large": estimated_mb > LARGE_PAYLOAD_MB,
        "warning": warning,
    }


__all__ = [
    "MAX_BATCH_BYTES",
    "BATCH_THRESHOLD_BYTES",
    "utf8_size",
    "needs_batching",
    "split_payload",
    "build_batches",
    "payload_metrics",
]
