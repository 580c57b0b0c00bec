"""Tests for the ingestion state machine."""

from __future__ import annotations

import orjson
import pytest

from clara_ingest.core.errors import InvalidTransition
from clara_ingest.ingest.quality import QualityMetrics, TextQualityResult
from clara_ingest.ingest.state import (
    BatchingStarted,
    BatchSent,
    Choice,
    DocumentCreated,
    Effect,
    ExtractionFinished,
    Failure,
    FileSelected,
    IngestionStage,
    IngestionState,
    JobPhase,
    OcrFinished,
    ProcessingFinished,
    QualityChecked,
    UploadFinished,
    UserDecision,
    available_choices,
    needs_compensation,
    transition,
)
from clara_ingest.ingest.types import FileKind


def quality(valid: bool) -> TextQualityResult:
    return TextQualityResult(
        is_valid=valid,
        confidence=1.0 if valid else 0.25,
        issues=() if valid else ("low ratio of valid words (30%)",),
        recommendation="use_text" if valid else "try_ocr",
        metrics=QualityMetrics(),
        text_preview="",
    )


def run_events(*events):
    state = IngestionState()
    effect = Effect.NONE
    for event in events:
        state, effect = transition(state, event)
    return state, effect


def test_pdf_happy_path() -> None:
    state, effect = run_events(FileSelected("edital.pdf", FileKind.PDF))
    assert state.stage is IngestionStage.EXTRACTING
    assert effect is Effect.EXTRACT
    assert state.job.progress_percent == 5

    state, effect = transition(state, ExtractionFinished(needs_ocr=False))
    assert (state.stage, effect) == (IngestionStage.QUALITY_CHECK, Effect.CHECK_QUALITY)

    state, effect = transition(state, QualityChecked(quality(True)))
    assert (state.stage, effect) == (IngestionStage.UPLOADING, Effect.UPLOAD)
    assert state.quality is not None and state.quality["confidence"] == 1.0

    state, effect = transition(state, UploadFinished("uploads/edital.pdf"))
    assert (state.stage, effect) == (IngestionStage.PROCESSING, Effect.PROCESS)

    state, effect = transition(state, ProcessingFinished("doc-1", "ready"))
    assert state.stage is IngestionStage.DONE
    assert effect is Effect.NONE
    assert state.job.progress_percent == 100
    assert state.job.document_id == "doc-1"
    assert state.document_status == "ready"


def test_docx_skips_extraction_and_quality_gate() -> None:
    state, effect = run_events(FileSelected("manual.docx", FileKind.DOCX))
    assert state.stage is IngestionStage.UPLOADING
    assert effect is Effect.UPLOAD
    assert state.extraction_method == "server"


def test_scanned_pdf_goes_straight_to_ocr_pending() -> None:
    state, effect = run_events(FileSelected("scan.pdf", FileKind.PDF), ExtractionFinished(needs_ocr=True))
    assert state.stage is IngestionStage.OCR_PENDING
    assert effect is Effect.AWAIT_USER
    assert state.quality is None


def test_invalid_quality_waits_for_user() -> None:
    state, effect = run_events(
        FileSelected("ruim.pdf", FileKind.PDF),
        ExtractionFinished(needs_ocr=False),
        QualityChecked(quality(False)),
    )
    assert state.stage is IngestionStage.OCR_PENDING
    assert effect is Effect.AWAIT_USER
    assert state.quality["issues"] == ["low ratio of valid words (30%)"]


def test_ocr_output_bypasses_quality_gate() -> None:
    state, effect = run_events(
        FileSelected("ruim.pdf", FileKind.PDF),
        ExtractionFinished(needs_ocr=False),
        QualityChecked(quality(False)),
        UserDecision(Choice.OCR),
    )
    assert (state.stage, effect) == (IngestionStage.EXTRACTING, Effect.RUN_OCR)
    assert state.extraction_method == "ocr"

    state, effect = transition(state, OcrFinished())
    assert (state.stage, effect) == (IngestionStage.UPLOADING, Effect.UPLOAD)


def test_use_text_marks_user_override() -> None:
    state, effect = run_events(
        FileSelected("ruim.pdf", FileKind.PDF),
        ExtractionFinished(needs_ocr=False),
        QualityChecked(quality(False)),
        UserDecision(Choice.USE_TEXT),
    )
    assert state.stage is IngestionStage.UPLOADING
    assert state.user_override
    assert state.extraction_method == "text"


def test_ocr_offered_for_pdf_only() -> None:
    pdf, _ = run_events(FileSelected("ruim.pdf", FileKind.PDF), ExtractionFinished(needs_ocr=False))
    txt, _ = run_events(FileSelected("ruim.txt", FileKind.TXT), ExtractionFinished(needs_ocr=False))
    assert available_choices(pdf) == (Choice.USE_TEXT, Choice.OCR, Choice.CANCEL)
    assert available_choices(txt) == (Choice.USE_TEXT, Choice.CANCEL)


def test_ocr_rejected_for_plain_text() -> None:
    state, effect = run_events(
        FileSelected("ruim.txt", FileKind.TXT),
        ExtractionFinished(needs_ocr=False),
        QualityChecked(quality(False)),
    )
    assert (state.stage, effect) == (IngestionStage.OCR_PENDING, Effect.AWAIT_USER)
    with pytest.raises(InvalidTransition):
        transition(state, UserDecision(Choice.OCR))
    cancelled, _ = transition(state, UserDecision(Choice.CANCEL))
    assert cancelled.stage is IngestionStage.CANCELLED


def test_cancel_only_before_upload() -> None:
    state, effect = run_events(FileSelected("a.txt", FileKind.TXT), UserDecision(Choice.CANCEL))
    assert state.stage is IngestionStage.CANCELLED
    assert effect is Effect.NONE

    uploading, _ = run_events(FileSelected("a.docx", FileKind.DOCX))
    with pytest.raises(InvalidTransition):
        transition(uploading, UserDecision(Choice.CANCEL))


def test_terminal_states_accept_nothing() -> None:
    state, _ = run_events(FileSelected("a.txt", FileKind.TXT), Failure("boom"))
    assert state.stage is IngestionStage.FAILED
    assert state.error == "boom"
    with pytest.raises(InvalidTransition):
        transition(state, FileSelected("a.txt", FileKind.TXT))


def test_out_of_order_event_rejected() -> None:
    with pytest.raises(InvalidTransition):
        transition(IngestionState(), UploadFinished("uploads/x.pdf"))
    extracting, _ = run_events(FileSelected("a.pdf", FileKind.PDF))
    with pytest.raises(InvalidTransition):
        transition(extracting, OcrFinished())


def test_failure_after_upload_requests_compensation() -> None:
    processing, _ = run_events(FileSelected("a.docx", FileKind.DOCX), UploadFinished("uploads/a.docx"))
    assert needs_compensation(processing)
    failed, effect = transition(processing, Failure("process failed"))
    assert effect is Effect.COMPENSATE
    assert failed.storage_path == "uploads/a.docx"


def test_no_compensation_once_server_side_document_created() -> None:
    processing, _ = run_events(FileSelected("a.docx", FileKind.DOCX), UploadFinished("uploads/a.docx"))
    created, effect = transition(processing, DocumentCreated("doc-9"))
    assert effect is Effect.NONE
    assert not needs_compensation(created)
    _, effect = transition(created, Failure("process failed"))
    assert effect is Effect.NONE


def test_batched_document_uncommitted_until_finish() -> None:
    batching, _ = run_events(
        FileSelected("a.txt", FileKind.TXT),
        ExtractionFinished(needs_ocr=False),
        QualityChecked(quality(True)),
        UploadFinished("uploads/a.txt"),
        BatchingStarted("doc-7", ("um", "dois")),
        BatchSent(1),
    )
    assert batching.job.document_id == "doc-7"
    assert needs_compensation(batching)
    failed, effect = transition(batching, Failure("batch 2/2 failed: gateway"))
    assert effect is Effect.COMPENSATE
    assert failed.job.document_id == "doc-7"

    finished, _ = transition(batching, BatchSent(2))
    done, _ = transition(finished, ProcessingFinished("doc-7", "ready"))
    assert done.job.phase is JobPhase.IDLE


def test_batch_progress() -> None:
    state, _ = run_events(
        FileSelected("big.txt", FileKind.TXT),
        ExtractionFinished(needs_ocr=False),
        QualityChecked(quality(True)),
        UploadFinished("uploads/big.txt"),
        BatchingStarted("doc-2", ("a", "b", "c", "d")),
    )
    assert state.job.phase is JobPhase.BATCHING
    assert state.job.document_id == "doc-2"
    progress = []
    for index in range(1, 5):
        state, effect = transition(state, BatchSent(index))
        assert effect is Effect.NONE
        progress.append(state.job.progress_percent)
    assert progress == sorted(progress)
    assert progress[-1] == 95
    with pytest.raises(InvalidTransition):
        transition(state, BatchSent(5))


def test_state_is_json_serializable() -> None:
    state, _ = run_events(
        FileSelected("ruim.pdf", FileKind.PDF),
        ExtractionFinished(needs_ocr=False),
        QualityChecked(quality(False)),
    )
    payload = orjson.loads(orjson.dumps(state.model_dump(mode="json")))
    assert payload["stage"] == "ocr_pending"
    assert payload["file_kind"] == "pdf"
    assert payload["job"]["phase"] == "extracting"
    assert payload["quality"]["recommendation"] == "try_ocr"


def test_transition_does_not_mutate_input() -> None:
    initial = IngestionState()
    transition(initial, FileSelected("a.pdf", FileKind.PDF))
    assert initial.stage is IngestionStage.IDLE
    assert initial.job.progress_percent == 0
