"""OCR fallback: render PDF pages to images and send them for recognition in batches."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Callable, Iterator

import fitz

from clara_ingest.core.errors import ExtractionError, OcrError
from clara_ingest.core.logging import get_logger
from clara_ingest.ingest.types import PageImage

if TYPE_CHECKING:
    from clara_ingest.api.client import BackendClient

logger = get_logger(__name__)

PAGES_PER_BATCH = 5
RENDER_SCALE = 2.0
JPEG_QUALITY = 85

OcrProgress = Callable[[int, int], None]


def page_batches(total_pages: int, batch_size: int = PAGES_PER_BATCH) -> Iterator[tuple[int, int]]:
    """Yield inclusive, 1-based ``(start, end)`` page ranges."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    for start in range(1, total_pages + 1, batch_size):
        yield start, min(start + batch_size - 1, total_pages)


def render_page_image(
    doc: "fitz.Document",
    page_num: int,
    scale: float = RENDER_SCALE,
    jpeg_quality: int = JPEG_QUALITY,
) -> PageImage:
    """Render a 1-based page number to a JPEG data URL."""
    page = doc[page_num - 1]
    pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale))
    encoded = base64.b64encode(pix.tobytes("jpeg", jpg_quality=jpeg_quality)).decode("ascii")
    return PageImage(
        page_num=page_num,
        data_url=f"data:image/jpeg;base64,{encoded}",
        width=pix.width,
        height=pix.height,
    )


class OcrFallbackEngine:
    """Recognize text of image-only PDFs through the backend OCR endpoint."""

    def __init__(
        self,
        client: "BackendClient",
        pages_per_batch: int = PAGES_PER_BATCH,
        scale: float = RENDER_SCALE,
        jpeg_quality: int = JPEG_QUALITY,
    ) -> None:
        self.client = client
        self.pages_per_batch = pages_per_batch
        self.scale = scale
        self.jpeg_quality = jpeg_quality

    def recognize(self, data: bytes, filename: str, progress: OcrProgress | None = None) -> str:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise ExtractionError(f"{filename}: could not read PDF ({exc})") from exc

        texts: list[str] = []
        with doc:
            total = doc.page_count
            for start, end in page_batches(total, self.pages_per_batch):
                images = self._render_range(doc, start, end, filename)
                if progress is not None:
                    progress(end, total)
                if not images:
                    continue
                response = self.client.ocr_batch(images)
                text = response.extracted_text.strip()
                if text:
                    texts.append(text)
                logger.info(
                    "OCR batch pages %s-%s of %s returned %s chars",
                    start,
                    end,
                    filename,
                    len(text),
                    extra={"ctx_pages": total},
                )

        if not texts:
            raise OcrError(f"{filename}: OCR returned no text")
        return "\n\n".join(texts)

    def _render_range(self, doc: "fitz.Document", start: int, end: int, filename: str) -> list[PageImage]:
        images: list[PageImage] = []
        for page_num in range(start, end + 1):
            try:
                images.append(render_page_image(doc, page_num, self.scale, self.jpeg_quality))
            except (RuntimeError, ValueError) as exc:
                logger.warning("Failed to render page %s of %s: %s", page_num, filename, exc)
        return images


__all__ = ["OcrFallbackEngine", "page_batches", "render_page_image"]
