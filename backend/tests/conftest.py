"""Test fixtures for the Clara ingestion client."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from clara_ingest.core.errors import BackendError  # noqa: E402
from clara_ingest.models.dto import (  # noqa: E402
    BatchAck,
    IngestResponse,
    IngestStartResponse,
    OcrBatchResponse,
    ProcessJobResponse,
    ProcessUploadResponse,
    UploadUrlResponse,
)

PT_PARAGRAPH = (
    "O servidor público deve apresentar o requerimento de férias ao setor de recursos humanos "
    "com antecedência mínima de trinta dias. A solicitação será analisada pela chefia imediata e, "
    "quando aprovada, encaminhada para registro no sistema de gestão de pessoas. "
)

GIBBERISH_GROUP = "xq zv kw a1%%% b2%%% c3%%% d4%%% e5%%% f6%%% g7%%% "


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset cached settings, singletons and environment between tests."""
    for key in list(os.environ):
        if key.startswith("CLARA_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CLARA_CONFIG", str(tmp_path / "missing-config.yaml"))

    from clara_ingest.api import dependencies as deps
    from clara_ingest.core.config import get_settings

    get_settings.cache_clear()
    deps.reset_dependencies()
    yield
    get_settings.cache_clear()
    deps.reset_dependencies()


@pytest.fixture(scope="session")
def clean_pt_text() -> str:
    return (PT_PARAGRAPH * 10).strip()


@pytest.fixture(scope="session")
def gibberish_text() -> str:
    return (GIBBERISH_GROUP * 20).strip()


class FakeBackend:
    """In-process stand-in for :class:`clara_ingest.api.client.BackendClient`."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.ingest_status = "ready"
        self.ingest_warning: str | None = None
        self.fail_ingest_text = False
        self.fail_batch: int | None = None
        self.fail_delete_document = False
        self.upload_status = "uploaded"
        self.process_status = "processing"
        self.ocr_text = "Texto reconhecido pela digitalização."
        self.job_responses: list[ProcessJobResponse] = []
        self.documents: list[Any] = []

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def get_upload_url(self, filename: str, content_type: str) -> UploadUrlResponse:
        self.calls.append(("get_upload_url", filename, content_type))
        return UploadUrlResponse(signedUrl=f"https://storage.test/sign/{filename}", path=f"uploads/{filename}")

    def ingest_text(self, title, category, full_text, metadata, file_path=None) -> IngestResponse:
        self.calls.append(("ingest_text", title, category, full_text, metadata, file_path))
        if self.fail_ingest_text:
            raise BackendError("POST /documents/ingest-text failed (500): boom", status=500)
        return IngestResponse(
            status=self.ingest_status,
            warning=self.ingest_warning,
            document={"id": "doc-text", "title": title, "chunk_count": 3},
        )

    def ingest_start(self, title, category, metadata, file_path=None) -> IngestStartResponse:
        self.calls.append(("ingest_start", title, category, metadata, file_path))
        return IngestStartResponse(documentId="doc-batched")

    def ingest_batch(self, document_id, text, index, total) -> BatchAck:
        self.calls.append(("ingest_batch", document_id, index, total, len(text)))
        if index == self.fail_batch:
            raise BackendError("POST /documents/ingest-batch failed (502): gateway", status=502)
        return BatchAck(status="batch_received", documentId=document_id, batchIndex=index)

    def ingest_finish(self, document_id) -> IngestResponse:
        self.calls.append(("ingest_finish", document_id))
        return IngestResponse(status=self.ingest_status, warning=self.ingest_warning, document={"id": document_id})

    def process(self, document_id) -> IngestResponse:
        self.calls.append(("process", document_id))
        return IngestResponse(status=self.process_status, document={"id": document_id})

    def process_job(self) -> ProcessJobResponse:
        self.calls.append(("process_job",))
        if self.job_responses:
            return self.job_responses.pop(0)
        return ProcessJobResponse()

    def ocr_batch(self, page_images) -> OcrBatchResponse:
        self.calls.append(("ocr_batch", [image.page_num for image in page_images]))
        return OcrBatchResponse(extractedText=self.ocr_text)

    def process_upload(self, file_path, title, category, file_type, original_name) -> ProcessUploadResponse:
        self.calls.append(("process_upload", file_path, title, category, file_type, original_name))
        return ProcessUploadResponse(status=self.upload_status, document_id="doc-docx")

    def list_documents(self) -> list[Any]:
        self.calls.append(("list_documents",))
        return list(self.documents)

    def delete_document(self, document_id) -> None:
        self.calls.append(("delete_document", document_id))
        if self.fail_delete_document:
            raise BackendError("DELETE /documents failed (500): boom", status=500)

    def delete_storage_object(self, path, bucket=None) -> None:
        self.calls.append(("delete_storage_object", path))


class FakeTransport:
    def __init__(self, error: Exception | None = None) -> None:
        self.puts: list[tuple[str, int, str]] = []
        self.error = error

    def put(self, signed_url: str, data: bytes, content_type: str) -> None:
        self.puts.append((signed_url, len(data), content_type))
        if self.error is not None:
            raise self.error


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
