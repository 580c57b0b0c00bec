"""Text extractors for supported upload formats."""

from __future__ import annotations

import re
from pathlib import Path

import fitz
import langid

from clara_ingest.core.errors import ExtractionError, FileValidationError
from clara_ingest.core.logging import get_logger
from clara_ingest.ingest.types import PAGE_MARKER, ExtractionResult, FileKind, PageMetrics
from clara_ingest.utils.text import normalize

logger = get_logger(__name__)

EMPTY_PAGE_CHARS = 10
LOW_CONTENT_CHARS = 50
MIN_AVG_CHARS_PER_PAGE = 50
MIN_TOTAL_CHARS = 200

_PAGE_ALNUM_RE = re.compile(r"[a-zA-Z0-9áéíóúâêîôûãõàèìòùäëïöüçÁÉÍÓÚÂÊÎÔÛÃÕÀÈÌÒÙÄËÏÖÜÇ]")

_KIND_BY_MIME = {
    "application/pdf": FileKind.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FileKind.DOCX,
    "text/plain": FileKind.TXT,
}
_KIND_BY_SUFFIX = {".pdf": FileKind.PDF, ".docx": FileKind.DOCX, ".txt": FileKind.TXT}
MIME_BY_KIND = {kind: mime for mime, kind in _KIND_BY_MIME.items()}


def detect_file_kind(filename: str, content_type: str | None = None) -> FileKind:
    """Resolve the upload type from MIME type or extension."""
    if content_type and content_type in _KIND_BY_MIME:
        return _KIND_BY_MIME[content_type]
    kind = _KIND_BY_SUFFIX.get(Path(filename).suffix.lower())
    if kind is None:
        raise FileValidationError(f"{filename}: unsupported file type, use PDF, DOCX or TXT")
    return kind


def validate_upload(filename: str, size_bytes: int, max_bytes: int, content_type: str | None = None) -> FileKind:
    """Reject files outside the allow-list or over the size ceiling."""
    kind = detect_file_kind(filename, content_type)
    if size_bytes <= 0:
        raise FileValidationError(f"{filename}: file is empty (0 bytes)")
    if size_bytes > max_bytes:
        raise FileValidationError(
            f"{filename}: file too large ({size_bytes / 1024 / 1024:.0f}MB), limit is {max_bytes // (1024 * 1024)}MB"
        )
    return kind


def analyze_pages(pages: list[str]) -> tuple[bool, list[int], bool, PageMetrics]:
    """Classify pages and decide whether the document looks scanned.

    Returns ``(needs_ocr, pages_needing_ocr, is_hybrid, metrics)``.
    """
    total_pages = len(pages)
    total_chars = sum(len(page) for page in pages)
    avg_chars = total_chars / total_pages if total_pages else 0.0

    needing_ocr: list[int] = []
    valid_pages = 0
    for index, page in enumerate(pages):
        count = len(page)
        if count < EMPTY_PAGE_CHARS:
            needing_ocr.append(index)
        elif count < LOW_CONTENT_CHARS:
            # Short pages are fine unless they are mostly symbols.
            if len(_PAGE_ALNUM_RE.findall(page)) / count < 0.5:
                needing_ocr.append(index)
            else:
                valid_pages += 1
        else:
            valid_pages += 1

    metrics = PageMetrics(
        total_chars=total_chars,
        estimated_mb=round(len("\n".join(pages).encode("utf-8")) / (1024 * 1024), 2),
        empty_pages=sum(1 for page in pages if len(page) < EMPTY_PAGE_CHARS),
        low_content_pages=sum(1 for page in pages if len(page) < LOW_CONTENT_CHARS),
        valid_text_pages=valid_pages,
    )
    all_empty = total_pages > 0 and len(needing_ocr) == total_pages
    most_need_ocr = len(needing_ocr) > total_pages * 0.5
    needs_ocr = (
        all_empty
        or (avg_chars < MIN_AVG_CHARS_PER_PAGE and most_need_ocr)
        or (total_pages > 3 and total_chars < MIN_TOTAL_CHARS)
    )
    is_hybrid = 0 < len(needing_ocr) < total_pages
    return needs_ocr, needing_ocr, is_hybrid, metrics


class BaseExtractor:
    """Common extractor interface."""

    kind: FileKind

    def extract(self, data: bytes, filename: str) -> ExtractionResult:  # pragma: no cover - interface
        raise NotImplementedError


class PdfExtractor(BaseExtractor):
    kind = FileKind.PDF

    def extract(self, data: bytes, filename: str) -> ExtractionResult:
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                pages = [_page_text(page, filename) for page in doc]
        except (RuntimeError, ValueError) as exc:
            raise ExtractionError(f"{filename}: could not read PDF ({exc})") from exc
        if not pages:
            raise ExtractionError(f"{filename}: PDF has no pages")

        needs_ocr, needing_ocr, is_hybrid, metrics = analyze_pages(pages)
        full_text = "\n\n".join(
            f"{PAGE_MARKER.format(number=idx)}\n\n{text}" for idx, text in enumerate(pages, start=1)
        )
        logger.info(
            "Extracted %s pages from %s (%s need OCR, hybrid=%s)",
            len(pages),
            filename,
            len(needing_ocr),
            is_hybrid,
        )
        return ExtractionResult(
            full_text=full_text,
            pages=pages,
            needs_ocr=needs_ocr,
            pages_needing_ocr=needing_ocr,
            is_hybrid=is_hybrid,
            metrics=metrics,
            lang=_detect_lang(" ".join(pages)),
        )


class TextFileExtractor(BaseExtractor):
    kind = FileKind.TXT

    def extract(self, data: bytes, filename: str) -> ExtractionResult:
        # Undecodable bytes become U+FFFD so the quality gate can see them.
        text = data.decode("utf-8", errors="replace")
        _, _, _, metrics = analyze_pages([text])
        return ExtractionResult(
            full_text=text,
            pages=[text],
            needs_ocr=False,
            metrics=metrics,
            lang=_detect_lang(text),
        )


class TextExtractor:
    """Registry that selects an extractor for a file kind.

    DOCX has no local extractor: the backend extracts it after upload.
    """

    def __init__(self) -> None:
        self._extractors: dict[FileKind, BaseExtractor] = {
            FileKind.PDF: PdfExtractor(),
            FileKind.TXT: TextFileExtractor(),
        }

    def register(self, extractor: BaseExtractor) -> None:
        self._extractors[extractor.kind] = extractor

    def supports(self, kind: FileKind) -> bool:
        return kind in self._extractors

    def extract(self, kind: FileKind, data: bytes, filename: str) -> ExtractionResult:
        extractor = self._extractors.get(kind)
        if extractor is None:
            raise ExtractionError(f"{filename}: no local extractor for {kind.value} files")
        return extractor.extract(data, filename)


def _page_text(page: "fitz.Page", filename: str) -> str:
    try:
        return normalize(page.get_text("text", sort=True))
    except RuntimeError as exc:
        logger.warning("Failed to extract page %s of %s: %s", page.number + 1, filename, exc)
        return ""


def _detect_lang(text: str) -> str | None:
    if not text.strip():
        return None
    lang, _ = langid.classify(text[:5000])
    return lang


__all__ = [
    "PAGE_MARKER",
    "MIME_BY_KIND",
    "detect_file_kind",
    "validate_upload",
    "analyze_pages",
    "PdfExtractor",
    "TextFileExtractor",
    "TextExtractor",
]
