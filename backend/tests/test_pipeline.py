"""End-to-end orchestrator tests against an in-process backend."""

from __future__ import annotations

from pathlib import Path

import fitz
import pytest

from clara_ingest.core.config import Settings
from clara_ingest.core.errors import BackendError, TerminalTransportError
from clara_ingest.ingest.loaders import TextExtractor
from clara_ingest.ingest.pipeline import IngestionOrchestrator
from clara_ingest.ingest.poller import JobPoller
from clara_ingest.ingest.state import Choice, IngestionStage
from clara_ingest.ingest.types import ExtractionResult, FileKind

from conftest import FakeBackend, FakeTransport


class FixedTextExtractor(TextExtractor):
    """Returns canned text for PDFs so quality scenarios do not depend on font rendering."""

    def __init__(self, text: str, needs_ocr: bool = False) -> None:
        super().__init__()
        self.text = text
        self.needs_ocr = needs_ocr

    def extract(self, kind: FileKind, data: bytes, filename: str) -> ExtractionResult:
        return ExtractionResult(full_text=self.text, pages=[self.text], needs_ocr=self.needs_ocr)


@pytest.fixture
def poller(fake_backend: FakeBackend):
    job_poller = JobPoller(fake_backend, interval=60)
    yield job_poller
    job_poller.stop()


def make_orchestrator(backend: FakeBackend, transport: FakeTransport, poller: JobPoller, **kwargs) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        client=backend,  # type: ignore[arg-type]
        settings=Settings(),
        transport=transport,  # type: ignore[arg-type]
        poller=poller,
        **kwargs,
    )


def write(tmp_path: Path, name: str, content: str | bytes) -> Path:
    path = tmp_path / name
    if isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_bytes(content)
    return path


def test_clean_text_ingested_in_one_call(tmp_path, fake_backend, fake_transport, poller, clean_pt_text) -> None:
    path = write(tmp_path, "ferias.txt", clean_pt_text)
    states = []
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller, progress=states.append)

    run = orchestrator.ingest_file(path, category="rh")

    assert run.state.stage is IngestionStage.DONE
    assert run.state.document_status == "ready"
    assert fake_backend.names() == ["get_upload_url", "ingest_text"]
    _, title, category, full_text, metadata, file_path = fake_backend.calls[1]
    assert (title, category, file_path) == ("ferias", "rh", "uploads/ferias.txt")
    assert full_text == clean_pt_text
    wire = metadata.model_dump(mode="json", by_alias=True)
    assert wire["extractionMethod"] == "text"
    assert wire["qualityScore"] == 1.0
    assert wire["userOverride"] is False
    assert wire["originalFilename"] == "ferias.txt"
    assert fake_transport.puts == [("https://storage.test/sign/ferias.txt", len(clean_pt_text.encode()), "text/plain")]
    assert [state.stage for state in states][-1] is IngestionStage.DONE
    assert states[-1].job.progress_percent == 100


def test_gibberish_halts_for_decision(tmp_path, fake_backend, fake_transport, poller, gibberish_text) -> None:
    path = write(tmp_path, "quebrado.pdf", b"%PDF-1.4 stub")
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller, extractor=FixedTextExtractor(gibberish_text))

    run = orchestrator.ingest_file(path)

    assert run.awaiting_decision
    assert run.state.quality["recommendation"] == "try_ocr"
    assert fake_backend.calls == []
    assert fake_transport.puts == []

    orchestrator.resume(run, Choice.USE_TEXT)
    assert run.state.stage is IngestionStage.DONE
    metadata = fake_backend.calls[-1][4]
    assert metadata.user_override is True
    assert metadata.quality_score == pytest.approx(0.25)


def test_decision_callback_can_cancel(tmp_path, fake_backend, fake_transport, poller, gibberish_text) -> None:
    path = write(tmp_path, "quebrado.pdf", b"%PDF-1.4 stub")
    seen = []

    def decide(state):
        seen.append(state.stage)
        return "cancel"

    orchestrator = make_orchestrator(
        fake_backend, fake_transport, poller, extractor=FixedTextExtractor(gibberish_text), decide=decide
    )
    report = orchestrator.ingest_files([path])

    assert seen == [IngestionStage.OCR_PENDING]
    assert report.outcomes[0].status == "cancelled"
    assert fake_backend.calls == []


def test_ocr_choice_rejected_for_text_file(tmp_path, fake_backend, fake_transport, poller, gibberish_text) -> None:
    path = write(tmp_path, "quebrado.txt", gibberish_text)
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller, decide=lambda state: Choice.OCR)

    run = orchestrator.ingest_file(path)

    assert run.state.stage is IngestionStage.FAILED
    assert run.state.error == "ocr is not available for txt files"
    assert fake_backend.calls == []
    assert fake_transport.puts == []


def test_large_text_sent_in_ordered_batches(tmp_path, fake_backend, fake_transport, poller) -> None:
    path = write(tmp_path, "enorme.txt", "a" * 3_000_000)
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller, decide=lambda state: Choice.USE_TEXT)

    run = orchestrator.ingest_file(path)

    assert run.state.stage is IngestionStage.DONE
    assert fake_backend.names() == ["get_upload_url", "ingest_start"] + ["ingest_batch"] * 8 + ["ingest_finish"]
    batches = [call for call in fake_backend.calls if call[0] == "ingest_batch"]
    assert [call[2] for call in batches] == list(range(1, 9))
    assert {call[3] for call in batches} == {8}
    assert sum(call[4] for call in batches) == 3_000_000
    assert all(call[4] <= 400_000 for call in batches)
    assert run.state.job.document_id == "doc-batched"
    assert len(run.state.job.batches) == 8


def test_failed_batch_aborts_and_names_batch(tmp_path, fake_backend, fake_transport, poller) -> None:
    fake_backend.fail_batch = 3
    path = write(tmp_path, "enorme.txt", "a" * 3_000_000)
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller, decide=lambda state: Choice.USE_TEXT)

    run = orchestrator.ingest_file(path)

    assert run.state.stage is IngestionStage.FAILED
    assert "batch 3/8" in run.state.error
    assert fake_backend.names() == ["get_upload_url", "ingest_start"] + ["ingest_batch"] * 3 + ["delete_document"]
    assert fake_backend.calls[-1] == ("delete_document", "doc-batched")
    assert "doc-batched" not in poller.in_flight


def test_failed_batch_falls_back_to_storage_cleanup(tmp_path, fake_backend, fake_transport, poller) -> None:
    fake_backend.fail_batch = 1
    fake_backend.fail_delete_document = True
    path = write(tmp_path, "enorme.txt", "a" * 3_000_000)
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller, decide=lambda state: Choice.USE_TEXT)

    run = orchestrator.ingest_file(path)

    assert run.state.stage is IngestionStage.FAILED
    assert fake_backend.names()[-2:] == ["delete_document", "delete_storage_object"]
    assert fake_backend.calls[-1] == ("delete_storage_object", "uploads/enorme.txt")


def test_failed_finish_removes_partial_document(tmp_path, fake_backend, fake_transport, poller) -> None:
    path = write(tmp_path, "enorme.txt", "a" * 3_000_000)

    def failing_finish(document_id):
        fake_backend.calls.append(("ingest_finish", document_id))
        raise BackendError("POST /documents/ingest-finish failed (500): boom", status=500)

    fake_backend.ingest_finish = failing_finish  # type: ignore[method-assign]
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller, decide=lambda state: Choice.USE_TEXT)

    run = orchestrator.ingest_file(path)

    assert run.state.stage is IngestionStage.FAILED
    assert fake_backend.names()[-2:] == ["ingest_finish", "delete_document"]


def test_backend_failure_removes_uploaded_object(tmp_path, fake_backend, fake_transport, poller, clean_pt_text) -> None:
    fake_backend.fail_ingest_text = True
    path = write(tmp_path, "ferias.txt", clean_pt_text)
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller)

    report = orchestrator.ingest_files([path])

    outcome = report.outcomes[0]
    assert outcome.status == "failed"
    assert "ingest-text" in outcome.cause
    assert fake_backend.calls[-1] == ("delete_storage_object", "uploads/ferias.txt")
    assert report.summary is None


def test_upload_failure_reported_without_cleanup(tmp_path, fake_backend, poller, clean_pt_text) -> None:
    transport = FakeTransport(error=TerminalTransportError("upload failed (403): expired", status=403))
    path = write(tmp_path, "ferias.txt", clean_pt_text)
    run = make_orchestrator(fake_backend, transport, poller).ingest_file(path)

    assert run.state.stage is IngestionStage.FAILED
    assert "403" in run.state.error
    assert fake_backend.names() == ["get_upload_url"]


def test_docx_processed_server_side(tmp_path, fake_backend, fake_transport, poller) -> None:
    path = write(tmp_path, "Manual de Procedimentos.docx", b"PK\x03\x04 not really a zip")
    run = make_orchestrator(fake_backend, fake_transport, poller).ingest_file(path)

    assert run.state.stage is IngestionStage.DONE
    assert run.state.extraction_method == "server"
    assert run.state.document_status == "processing"
    assert fake_backend.names() == ["get_upload_url", "process_upload", "process"]
    upload_call = fake_backend.calls[1]
    assert upload_call[1:] == (
        "uploads/Manual de Procedimentos.docx",
        "Manual de Procedimentos",
        "manual",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "Manual de Procedimentos.docx",
    )
    assert "doc-docx" in poller.in_flight


def test_processing_status_is_tracked(tmp_path, fake_backend, fake_transport, poller, clean_pt_text) -> None:
    fake_backend.ingest_status = "processing"
    path = write(tmp_path, "ferias.txt", clean_pt_text)
    make_orchestrator(fake_backend, fake_transport, poller).ingest_file(path)
    assert "doc-text" in poller.in_flight


def test_multi_file_report(tmp_path, fake_backend, fake_transport, poller, clean_pt_text) -> None:
    first = write(tmp_path, "um.txt", clean_pt_text)
    second = write(tmp_path, "dois.txt", clean_pt_text)
    rejected = write(tmp_path, "planilha.xlsx", b"binary")
    orchestrator = make_orchestrator(fake_backend, fake_transport, poller)

    report = orchestrator.ingest_files([first, second])
    assert [outcome.status for outcome in report.outcomes] == ["done", "done"]
    assert report.summary == "2 files ingested successfully"

    mixed = orchestrator.ingest_files([first, rejected])
    assert [outcome.status for outcome in mixed.outcomes] == ["done", "rejected"]
    assert "unsupported file type" in mixed.outcomes[1].cause
    assert mixed.has_errors
    assert mixed.summary is None


def test_single_file_has_no_summary(tmp_path, fake_backend, fake_transport, poller, clean_pt_text) -> None:
    path = write(tmp_path, "um.txt", clean_pt_text)
    report = make_orchestrator(fake_backend, fake_transport, poller).ingest_files([path])
    assert report.summary is None
    assert not report.has_errors


def test_oversized_file_rejected_before_network(tmp_path, fake_backend, fake_transport, poller) -> None:
    path = write(tmp_path, "grande.txt", b"a" * (2 * 1024 * 1024))
    orchestrator = IngestionOrchestrator(
        client=fake_backend,  # type: ignore[arg-type]
        settings=Settings(max_file_mb=1),
        transport=fake_transport,  # type: ignore[arg-type]
        poller=poller,
    )
    report = orchestrator.ingest_files([path, tmp_path / "sumiu.txt"])
    assert [outcome.status for outcome in report.outcomes] == ["rejected", "rejected"]
    assert "too large" in report.outcomes[0].cause
    assert fake_backend.calls == []


def test_scanned_pdf_ocr_path(tmp_path, fake_backend, fake_transport, poller) -> None:
    doc = fitz.open()
    for _ in range(2):
        doc.new_page()
    path = write(tmp_path, "digitalizado.pdf", doc.tobytes())
    doc.close()
    decisions = []

    def decide(state):
        decisions.append(state.quality)
        return Choice.OCR

    run = make_orchestrator(fake_backend, fake_transport, poller, decide=decide).ingest_file(path)

    assert decisions == [None]
    assert run.state.stage is IngestionStage.DONE
    assert run.state.extraction_method == "ocr"
    assert fake_backend.names() == ["ocr_batch", "get_upload_url", "ingest_text"]
    assert fake_backend.calls[0][1] == [1, 2]
    metadata = fake_backend.calls[-1][4]
    assert metadata.extraction_method == "ocr"
    assert metadata.total_pages == 2
    assert fake_backend.calls[-1][3] == fake_backend.ocr_text
