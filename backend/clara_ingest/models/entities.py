"""Internal dataclasses representing backend entities."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from clara_ingest.utils.time import parse_timestamp


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    INGESTING = "ingesting"
    PROCESSING = "processing"
    CHUNKS_OK_EMBED_PENDING = "chunks_ok_embed_pending"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.READY, DocumentStatus.FAILED)


# Statuses that mean the backend still owes work on the document.
IN_PROGRESS_STATUSES = frozenset(
    {DocumentStatus.PROCESSING, DocumentStatus.INGESTING, DocumentStatus.CHUNKS_OK_EMBED_PENDING}
)


@dataclass(slots=True)
class Document:
    id: str
    title: str
    category: str
    status: DocumentStatus
    updated_at: datetime
    error_reason: str | None = None
    total_chunks: int = 0
    file_path: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Document":
        """Build from a row of the backend document list."""
        updated_raw = record.get("updated_at") or record.get("created_at")
        if not updated_raw:
            raise ValueError(f"document {record.get('id')} has no timestamp")
        created_raw = record.get("created_at")
        return cls(
            id=str(record["id"]),
            title=record.get("title") or "",
            category=record.get("category") or "",
            status=DocumentStatus(record.get("status") or DocumentStatus.PROCESSING.value),
            updated_at=parse_timestamp(updated_raw),
            error_reason=record.get("error_reason"),
            total_chunks=int(record.get("chunk_count") or record.get("total_chunks") or 0),
            file_path=record.get("file_path"),
            created_at=parse_timestamp(created_raw) if created_raw else None,
        )


__all__ = ["DocumentStatus", "IN_PROGRESS_STATUSES", "Document"]
