"""Text extraction, quality gating and payload batching."""

from .batcher import build_batches, needs_batching, split_payload
from .quality import TextQualityResult, quick_needs_ocr_check, validate_text_quality
from .types import Batch, ExtractionResult, FileKind

__all__ = [
    "build_batches",
    "needs_batching",
    "split_payload",
    "TextQualityResult",
    "quick_needs_ocr_check",
    "validate_text_quality",
    "Batch",
    "ExtractionResult",
    "FileKind",
]
