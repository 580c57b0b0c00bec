"""Pydantic DTOs exchanged with the knowledge-base backend."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

_WIRE_CONFIG = {"populate_by_name": True, "extra": "ignore"}


class UploadUrlResponse(BaseModel):
    signed_url: str = Field(alias="signedUrl")
    path: str
    bucket: str | None = None
    token: str | None = None
    content_type: str | None = Field(default=None, alias="contentType")

    model_config = _WIRE_CONFIG


class IngestionMetadata(BaseModel):
    extraction_method: Literal["text", "ocr", "server"] = Field(alias="extractionMethod")
    quality_score: float | None = Field(default=None, alias="qualityScore")
    quality_issues: list[str] = Field(default_factory=list, alias="qualityIssues")
    user_override: bool = Field(default=False, alias="userOverride")
    original_filename: str = Field(alias="originalFilename")
    total_pages: int | None = Field(default=None, alias="totalPages")
    extracted_at: datetime = Field(alias="extractedAt")

    model_config = _WIRE_CONFIG


class DocumentSummary(BaseModel):
    id: str
    title: str | None = None
    chunk_count: int | None = None
    status: str | None = None

    model_config = _WIRE_CONFIG


class IngestResponse(BaseModel):
    """Answer of ``ingest-text``, ``ingest-finish`` and ``process``."""

    status: str
    warning: str | None = None
    document: DocumentSummary | None = None

    model_config = _WIRE_CONFIG

    @property
    def document_id(self) -> str | None:
        return self.document.id if self.document else None


class IngestStartResponse(BaseModel):
    status: str = "ingesting"
    document_id: str = Field(alias="documentId")

    model_config = _WIRE_CONFIG


class BatchAck(BaseModel):
    status: str
    document_id: str | None = Field(default=None, alias="documentId")
    batch_index: int | None = Field(default=None, alias="batchIndex")
    total_chars: int | None = Field(default=None, alias="totalChars")

    model_config = _WIRE_CONFIG


class ProcessUploadResponse(BaseModel):
    """Answer of ``POST /documents`` for server-side extraction."""

    status: str
    document_id: str | None = None
    message: str | None = None
    warning: str | None = None
    document: DocumentSummary | None = None

    model_config = _WIRE_CONFIG

    @property
    def resolved_document_id(self) -> str | None:
        if self.document_id:
            return self.document_id
        return self.document.id if self.document else None


class ProcessJobResponse(BaseModel):
    # Absent when the worker found no pending job.
    status: Literal["completed", "processing"] | None = None
    document_id: str | None = Field(default=None, alias="documentId")
    job_id: str | None = Field(default=None, alias="jobId")
    remaining: int | None = None

    model_config = _WIRE_CONFIG


class OcrBatchResponse(BaseModel):
    extracted_text: str = Field(default="", alias="extractedText")
    pages_processed: int | None = Field(default=None, alias="pagesProcessed")

    model_config = _WIRE_CONFIG


class DocumentListResponse(BaseModel):
    documents: list[dict[str, Any]] = Field(default_factory=list)

    model_config = _WIRE_CONFIG


__all__ = [
    "UploadUrlResponse",
    "IngestionMetadata",
    "DocumentSummary",
    "IngestResponse",
    "IngestStartResponse",
    "BatchAck",
    "ProcessUploadResponse",
    "ProcessJobResponse",
    "OcrBatchResponse",
    "DocumentListResponse",
]
