"""Ingestion state machine.

``transition`` is a pure function from ``(state, event)`` to ``(state, effect)``.
The orchestrator in :mod:`clara_ingest.ingest.pipeline` executes the returned
effect and feeds the outcome back in as the next event.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from clara_ingest.core.errors import InvalidTransition
from clara_ingest.ingest.quality import TextQualityResult
from clara_ingest.ingest.types import FileKind


class JobPhase(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    BATCHING = "batching"


class IngestionStage(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    QUALITY_CHECK = "quality_check"
    OCR_PENDING = "ocr_pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STAGES


_TERMINAL_STAGES = frozenset({IngestionStage.DONE, IngestionStage.FAILED, IngestionStage.CANCELLED})
_CANCELLABLE_STAGES = frozenset(
    {IngestionStage.IDLE, IngestionStage.EXTRACTING, IngestionStage.QUALITY_CHECK, IngestionStage.OCR_PENDING}
)


class Effect(str, Enum):
    EXTRACT = "extract"
    CHECK_QUALITY = "check_quality"
    AWAIT_USER = "await_user"
    RUN_OCR = "run_ocr"
    UPLOAD = "upload"
    PROCESS = "process"
    COMPENSATE = "compensate"
    NONE = "none"


class Choice(str, Enum):
    USE_TEXT = "use_text"
    OCR = "ocr"
    CANCEL = "cancel"


class IngestionJob(BaseModel):
    document_id: str | None = None
    phase: JobPhase = JobPhase.IDLE
    progress_percent: int = Field(default=0, ge=0, le=100)
    batches: list[str] = Field(default_factory=list)


class IngestionState(BaseModel):
    """Serializable snapshot of one file's ingestion."""

    stage: IngestionStage = IngestionStage.IDLE
    file_name: str = ""
    file_kind: FileKind | None = None
    job: IngestionJob = Field(default_factory=IngestionJob)
    quality: dict[str, Any] | None = None
    extraction_method: Literal["text", "ocr", "server"] | None = None
    user_override: bool = False
    storage_path: str | None = None
    warning: str | None = None
    error: str | None = None
    document_status: str | None = None


# Events ---------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FileSelected:
    file_name: str
    file_kind: FileKind


@dataclass(slots=True, frozen=True)
class ExtractionFinished:
    needs_ocr: bool


@dataclass(slots=True, frozen=True)
class QualityChecked:
    result: TextQualityResult


@dataclass(slots=True, frozen=True)
class UserDecision:
    choice: Choice


@dataclass(slots=True, frozen=True)
class OcrFinished:
    pass


@dataclass(slots=True, frozen=True)
class UploadFinished:
    storage_path: str


@dataclass(slots=True, frozen=True)
class DocumentCreated:
    document_id: str


@dataclass(slots=True, frozen=True)
class BatchingStarted:
    document_id: str
    batches: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class BatchSent:
    index: int


@dataclass(slots=True, frozen=True)
class ProcessingFinished:
    document_id: str | None
    status: str
    warning: str | None = None


@dataclass(slots=True, frozen=True)
class Failure:
    cause: str


Event = (
    FileSelected
    | ExtractionFinished
    | QualityChecked
    | UserDecision
    | OcrFinished
    | UploadFinished
    | DocumentCreated
    | BatchingStarted
    | BatchSent
    | ProcessingFinished
    | Failure
)

PROGRESS_STARTED = 5
PROGRESS_EXTRACTED = 20
PROGRESS_CHECKED = 30
PROGRESS_UPLOADING = 40
PROGRESS_UPLOADED = 55
PROGRESS_BATCH_SPAN = 40
PROGRESS_DONE = 100


def transition(state: IngestionState, event: Event) -> tuple[IngestionState, Effect]:
    """Apply ``event`` to ``state`` and return the new state plus the effect to run."""
    stage = state.stage
    if stage.is_terminal:
        raise InvalidTransition(f"{state.file_name}: no events accepted in terminal stage {stage.value}")

    if isinstance(event, Failure):
        return _fail(state, event.cause)

    if isinstance(event, UserDecision) and event.choice is Choice.CANCEL:
        if stage not in _CANCELLABLE_STAGES:
            raise InvalidTransition(f"{state.file_name}: cannot cancel once {stage.value} has started")
        return _update(state, stage=IngestionStage.CANCELLED, job_phase=JobPhase.IDLE), Effect.NONE

    if stage is IngestionStage.IDLE and isinstance(event, FileSelected):
        if event.file_kind is FileKind.DOCX:
            # Extracted server-side; no local text to gate.
            return (
                _update(
                    state,
                    stage=IngestionStage.UPLOADING,
                    file_name=event.file_name,
                    file_kind=event.file_kind,
                    extraction_method="server",
                    job_phase=JobPhase.UPLOADING,
                    progress=PROGRESS_UPLOADING,
                ),
                Effect.UPLOAD,
            )
        return (
            _update(
                state,
                stage=IngestionStage.EXTRACTING,
                file_name=event.file_name,
                file_kind=event.file_kind,
                extraction_method="text",
                job_phase=JobPhase.EXTRACTING,
                progress=PROGRESS_STARTED,
            ),
            Effect.EXTRACT,
        )

    if stage is IngestionStage.EXTRACTING and isinstance(event, ExtractionFinished):
        if state.extraction_method == "ocr":
            raise InvalidTransition(f"{state.file_name}: OCR run must finish with OcrFinished")
        if event.needs_ocr:
            return _update(state, stage=IngestionStage.OCR_PENDING, progress=PROGRESS_EXTRACTED), Effect.AWAIT_USER
        return _update(state, stage=IngestionStage.QUALITY_CHECK, progress=PROGRESS_EXTRACTED), Effect.CHECK_QUALITY

    if stage is IngestionStage.EXTRACTING and isinstance(event, OcrFinished):
        if state.extraction_method != "ocr":
            raise InvalidTransition(f"{state.file_name}: no OCR run in progress")
        # Recognized text skips the quality gate.
        return _to_upload(state), Effect.UPLOAD

    if stage is IngestionStage.QUALITY_CHECK and isinstance(event, QualityChecked):
        checked = state.model_copy(update={"quality": event.result.to_dict()})
        if event.result.is_valid:
            return _to_upload(checked), Effect.UPLOAD
        return _update(checked, stage=IngestionStage.OCR_PENDING, progress=PROGRESS_CHECKED), Effect.AWAIT_USER

    if stage is IngestionStage.OCR_PENDING and isinstance(event, UserDecision):
        if event.choice not in available_choices(state):
            raise InvalidTransition(f"{state.file_name}: {event.choice.value} is not available for this file type")
        if event.choice is Choice.USE_TEXT:
            return _to_upload(state.model_copy(update={"user_override": True})), Effect.UPLOAD
        return (
            _update(state, stage=IngestionStage.EXTRACTING, extraction_method="ocr", job_phase=JobPhase.EXTRACTING),
            Effect.RUN_OCR,
        )

    if stage is IngestionStage.UPLOADING and isinstance(event, UploadFinished):
        return (
            _update(
                state,
                stage=IngestionStage.PROCESSING,
                storage_path=event.storage_path,
                job_phase=JobPhase.PROCESSING,
                progress=PROGRESS_UPLOADED,
            ),
            Effect.PROCESS,
        )

    if stage is IngestionStage.PROCESSING and isinstance(event, DocumentCreated):
        job = state.job.model_copy(update={"document_id": event.document_id})
        return state.model_copy(update={"job": job}), Effect.NONE

    if stage is IngestionStage.PROCESSING and isinstance(event, BatchingStarted):
        job = state.job.model_copy(
            update={"document_id": event.document_id, "phase": JobPhase.BATCHING, "batches": list(event.batches)}
        )
        return state.model_copy(update={"job": job}), Effect.NONE

    if stage is IngestionStage.PROCESSING and isinstance(event, BatchSent):
        total = len(state.job.batches)
        if state.job.phase is not JobPhase.BATCHING or not 1 <= event.index <= total:
            raise InvalidTransition(f"{state.file_name}: unexpected batch {event.index}")
        progress = PROGRESS_UPLOADED + (PROGRESS_BATCH_SPAN * event.index) // total
        return _update(state, progress=progress), Effect.NONE

    if stage is IngestionStage.PROCESSING and isinstance(event, ProcessingFinished):
        job = state.job.model_copy(
            update={
                "document_id": event.document_id or state.job.document_id,
                "phase": JobPhase.IDLE,
                "progress_percent": PROGRESS_DONE,
            }
        )
        return (
            state.model_copy(
                update={
                    "stage": IngestionStage.DONE,
                    "job": job,
                    "document_status": event.status,
                    "warning": event.warning,
                }
            ),
            Effect.NONE,
        )

    raise InvalidTransition(f"{state.file_name}: {type(event).__name__} not accepted in stage {stage.value}")


def available_choices(state: IngestionState) -> tuple[Choice, ...]:
    """Decisions that make sense while a file waits in ``ocr_pending``; OCR renders PDF pages only."""
    if state.file_kind is FileKind.PDF:
        return (Choice.USE_TEXT, Choice.OCR, Choice.CANCEL)
    return (Choice.USE_TEXT, Choice.CANCEL)


def needs_compensation(state: IngestionState) -> bool:
    """Stored object exists and the backend has not committed a document for it.

    A batched document is only committed once ``ingest-finish`` answers; until
    then the backend holds partial text that must not be chunked.
    """
    if state.storage_path is None:
        return False
    return state.job.document_id is None or state.job.phase is JobPhase.BATCHING


def _fail(state: IngestionState, cause: str) -> tuple[IngestionState, Effect]:
    failed = _update(state, stage=IngestionStage.FAILED, job_phase=JobPhase.IDLE)
    failed = failed.model_copy(update={"error": cause})
    return failed, Effect.COMPENSATE if needs_compensation(state) else Effect.NONE


def _to_upload(state: IngestionState) -> IngestionState:
    return _update(state, stage=IngestionStage.UPLOADING, job_phase=JobPhase.UPLOADING, progress=PROGRESS_UPLOADING)


def _update(
    state: IngestionState,
    *,
    job_phase: JobPhase | None = None,
    progress: int | None = None,
    **fields: Any,
) -> IngestionState:
    job_fields: dict[str, Any] = {}
    if job_phase is not None:
        job_fields["phase"] = job_phase
    if progress is not None:
        job_fields["progress_percent"] = max(progress, state.job.progress_percent)
    if job_fields:
        fields["job"] = state.job.model_copy(update=job_fields)
    return state.model_copy(update=fields)


__all__ = [
    "JobPhase",
    "IngestionStage",
    "Effect",
    "Choice",
    "IngestionJob",
    "IngestionState",
    "FileSelected",
    "ExtractionFinished",
    "QualityChecked",
    "UserDecision",
    "OcrFinished",
    "UploadFinished",
    "DocumentCreated",
    "BatchingStarted",
    "BatchSent",
    "ProcessingFinished",
    "Failure",
    "Event",
    "transition",
    "available_choices",
    "needs_compensation",
]
