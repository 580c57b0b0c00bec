"""HTTP client for the knowledge-base backend functions."""

from __future__ import annotations

from typing import Any, Sequence
from urllib.parse import quote

import requests

from clara_ingest.core.config import Settings
from clara_ingest.core.errors import BackendError, describe_http_status
from clara_ingest.core.logging import get_logger
from clara_ingest.ingest.types import PageImage
from clara_ingest.models.dto import (
    BatchAck,
    DocumentListResponse,
    IngestionMetadata,
    IngestResponse,
    IngestStartResponse,
    OcrBatchResponse,
    ProcessJobResponse,
    ProcessUploadResponse,
    UploadUrlResponse,
)
from clara_ingest.models.entities import Document

logger = get_logger(__name__)


class BackendClient:
    """Thin wrapper over ``requests`` that sends the admin key and decodes DTOs."""

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self.base_url = settings.backend_url
        self.session = session or requests.Session()
        self.session.headers.update({"x-admin-key": settings.admin_key, "User-Agent": settings.user_agent})

    def get_upload_url(self, filename: str, content_type: str) -> UploadUrlResponse:
        data = self._request("POST", "/admin_get_upload_url", json={"filename": filename, "contentType": content_type})
        return UploadUrlResponse.model_validate(data)

    def ingest_text(
        self,
        title: str,
        category: str,
        full_text: str,
        metadata: IngestionMetadata,
        file_path: str | None = None,
    ) -> IngestResponse:
        body = {
            "title": title,
            "category": category,
            "fullText": full_text,
            "metadata": metadata.model_dump(mode="json", by_alias=True),
            "filePath": file_path,
        }
        return IngestResponse.model_validate(self._request("POST", "/documents/ingest-text", json=body))

    def ingest_start(
        self,
        title: str,
        category: str,
        metadata: IngestionMetadata,
        file_path: str | None = None,
    ) -> IngestStartResponse:
        body = {
            "title": title,
            "category": category,
            "filePath": file_path,
            "metadata": metadata.model_dump(mode="json", by_alias=True),
        }
        return IngestStartResponse.model_validate(self._request("POST", "/documents/ingest-start", json=body))

    def ingest_batch(self, document_id: str, text: str, index: int, total: int) -> BatchAck:
        body = {"documentId": document_id, "batchText": text, "batchIndex": index, "totalBatches": total}
        return BatchAck.model_validate(self._request("POST", "/documents/ingest-batch", json=body))

    def ingest_finish(self, document_id: str) -> IngestResponse:
        data = self._request("POST", "/documents/ingest-finish", json={"documentId": document_id})
        return IngestResponse.model_validate(data)

    def process(self, document_id: str) -> IngestResponse:
        data = self._request("POST", "/documents/process", json={"document_id": document_id})
        return IngestResponse.model_validate(data)

    def process_job(self) -> ProcessJobResponse:
        return ProcessJobResponse.model_validate(self._request("POST", "/documents/process-job", json={}))

    def ocr_batch(self, page_images: Sequence[PageImage]) -> OcrBatchResponse:
        body = {"pageImages": [image.to_payload() for image in page_images]}
        return OcrBatchResponse.model_validate(self._request("POST", "/documents/ocr-batch", json=body))

    def process_upload(
        self,
        file_path: str,
        title: str,
        category: str,
        file_type: str,
        original_name: str,
    ) -> ProcessUploadResponse:
        body = {
            "filePath": file_path,
            "title": title,
            "category": category,
            "fileType": file_type,
            "originalName": original_name,
        }
        return ProcessUploadResponse.model_validate(self._request("POST", "/documents", json=body))

    def list_documents(self) -> list[Document]:
        payload = DocumentListResponse.model_validate(self._request("GET", "/documents"))
        return [Document.from_record(record) for record in payload.documents]

    def delete_document(self, document_id: str) -> None:
        """Remove a document with its jobs, chunks and stored file."""
        self._request("DELETE", f"/documents/{quote(document_id)}")

    def delete_storage_object(self, path: str, bucket: str | None = None) -> None:
        bucket_name = bucket or self.settings.storage_bucket
        self._request("DELETE", f"/storage/{quote(bucket_name)}/{quote(path)}")

    # Internal helpers -------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.settings.request_timeout, **kwargs)
        except requests.RequestException as exc:
            raise BackendError(f"{method} {path} failed: {exc}", endpoint=path) from exc
        if not resp.ok:
            raise BackendError(
                f"{method} {path} failed ({resp.status_code}): {_error_detail(resp)}",
                status=resp.status_code,
                endpoint=path,
            )
        logger.debug("%s %s -> %s", method, path, resp.status_code)
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendError(f"{method} {path} returned invalid JSON", status=resp.status_code, endpoint=path) from exc
        return data if isinstance(data, dict) else {}


def _error_detail(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return describe_http_status(resp.status_code, resp.text)
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return describe_http_status(resp.status_code, resp.text)


__all__ = ["BackendClient"]
