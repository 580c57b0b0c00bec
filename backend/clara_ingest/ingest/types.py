"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Separates pages in extracted text; batches prefer to start on one.
PAGE_MARKER = "--- Página {number} ---"
PAGE_MARKER_PREFIX = PAGE_MARKER.split("{", 1)[0].rstrip()


class FileKind(str, Enum):
    """Accepted upload types."""

    PDF = "pdf"
    DOCX = "docx"
    TXT = "txt"


@dataclass(slots=True)
class PageMetrics:
    """Per-document page statistics gathered during extraction."""

    total_chars: int = 0
    estimated_mb: float = 0.0
    empty_pages: int = 0
    low_content_pages: int = 0
    valid_text_pages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_chars": self.total_chars,
            "estimated_mb": self.estimated_mb,
            "empty_pages": self.empty_pages,
            "low_content_pages": self.low_content_pages,
            "valid_text_pages": self.valid_text_pages,
        }


@dataclass(slots=True)
class ExtractionResult:
    """Raw text plus page-level metadata produced by a text extractor."""

    full_text: str
    pages: list[str]
    needs_ocr: bool
    pages_needing_ocr: list[int] = field(default_factory=list)
    is_hybrid: bool = False
    metrics: PageMetrics = field(default_factory=PageMetrics)
    lang: str | None = None

    @property
    def total_pages(self) -> int:
        return len(self.pages)

    @property
    def page_char_counts(self) -> list[int]:
        return [len(page) for page in self.pages]

    @property
    def avg_chars_per_page(self) -> float:
        return self.metrics.total_chars / self.total_pages if self.total_pages else 0.0


@dataclass(slots=True, frozen=True)
class Batch:
    """One transmission-safe slice of a document's text."""

    index: int
    total_batches: int
    text: str

    @property
    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))


@dataclass(slots=True, frozen=True)
class PageImage:
    """Rendered page ready for the recognition endpoint."""

    page_num: int
    data_url: str
    width: int
    height: int

    def to_payload(self) -> dict[str, Any]:
        return {"pageNum": self.page_num, "dataUrl": self.data_url}


__all__ = [
    "PAGE_MARKER",
    "PAGE_MARKER_PREFIX",
    "FileKind",
    "PageMetrics",
    "ExtractionResult",
    "Batch",
    "PageImage",
]
