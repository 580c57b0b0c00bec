"""Ingestion orchestration: run each file through the state machine and execute its effects."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal, Sequence

from clara_ingest.api.client import BackendClient
from clara_ingest.core.config import Settings
from clara_ingest.core.errors import BatchTransmissionError, FileValidationError
from clara_ingest.core.logging import get_logger
from clara_ingest.core.metrics import BATCHES_SENT, INGEST_DURATION, INGEST_OUTCOMES, QUALITY_VERDICTS
from clara_ingest.ingest.batcher import build_batches, needs_batching, payload_metrics
from clara_ingest.ingest.loaders import MIME_BY_KIND, TextExtractor, validate_upload
from clara_ingest.ingest.ocr import OcrFallbackEngine
from clara_ingest.ingest.poller import JobPoller
from clara_ingest.ingest.quality import TextQualityResult, validate_text_quality
from clara_ingest.ingest.state import (
    BatchingStarted,
    BatchSent,
    Choice,
    DocumentCreated,
    Effect,
    Event,
    ExtractionFinished,
    Failure,
    FileSelected,
    IngestionStage,
    IngestionState,
    OcrFinished,
    ProcessingFinished,
    QualityChecked,
    UploadFinished,
    UserDecision,
    available_choices,
    transition,
)
from clara_ingest.ingest.transport import UploadTransport
from clara_ingest.ingest.types import ExtractionResult, FileKind
from clara_ingest.models.dto import IngestionMetadata
from clara_ingest.models.entities import DocumentStatus
from clara_ingest.utils.text import strip_extension
from clara_ingest.utils.time import utc_now

logger = get_logger(__name__)

DecisionCallback = Callable[[IngestionState], "Choice | str | None"]
ProgressCallback = Callable[[IngestionState], None]

OutcomeStatus = Literal["done", "failed", "rejected", "awaiting_decision", "cancelled"]

_PENDING_DOCUMENT_STATUSES = frozenset({DocumentStatus.PROCESSING.value, DocumentStatus.INGESTING.value})


@dataclass(slots=True)
class IngestionRun:
    """One file moving through the pipeline; kept around while awaiting a decision."""

    state: IngestionState
    data: bytes
    kind: FileKind
    title: str
    category: str
    content_type: str
    extraction: ExtractionResult | None = None
    full_text: str = ""
    quality: TextQualityResult | None = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def awaiting_decision(self) -> bool:
        return self.state.stage is IngestionStage.OCR_PENDING


@dataclass(slots=True)
class FileOutcome:
    file_name: str
    status: OutcomeStatus
    cause: str | None = None
    document_id: str | None = None
    document_status: str | None = None
    warning: str | None = None
    run: IngestionRun | None = None


@dataclass(slots=True)
class IngestReport:
    outcomes: list[FileOutcome] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(outcome.status in ("failed", "rejected") for outcome in self.outcomes)

    @property
    def succeeded(self) -> list[FileOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == "done"]

    @property
    def summary(self) -> str | None:
        """Only reported when several files were sent and every one of them succeeded."""
        if len(self.outcomes) > 1 and len(self.succeeded) == len(self.outcomes):
            return f"{len(self.outcomes)} files ingested successfully"
        return None


class IngestionOrchestrator:
    """Coordinate extraction, quality gate, OCR fallback, upload and backend processing."""

    def __init__(
        self,
        client: BackendClient,
        settings: Settings,
        extractor: TextExtractor | None = None,
        ocr_engine: OcrFallbackEngine | None = None,
        transport: UploadTransport | None = None,
        poller: JobPoller | None = None,
        decide: DecisionCallback | None = None,
        progress: ProgressCallback | None = None,
        on_refresh: Callable[[], None] | None = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.extractor = extractor or TextExtractor()
        self.ocr_engine = ocr_engine or OcrFallbackEngine(
            client,
            pages_per_batch=settings.ocr_pages_per_batch,
            scale=settings.ocr_render_scale,
            jpeg_quality=settings.ocr_jpeg_quality,
        )
        self.transport = transport or UploadTransport(
            user_agent=settings.user_agent,
            max_attempts=settings.upload_max_attempts,
            base_delay=settings.upload_base_delay,
        )
        self.poller = poller or JobPoller(
            client,
            interval=settings.poll_interval_seconds,
            stuck_after=settings.stuck_after_seconds,
            on_refresh=on_refresh,
        )
        self.decide = decide
        self.progress = progress
        self.on_refresh = on_refresh

    def ingest_files(self, paths: Sequence[Path], category: str | None = None) -> IngestReport:
        """Ingest files one after another; a failure never stops the remaining files."""
        report = IngestReport()
        for path in paths:
            name = Path(path).name
            try:
                run = self.ingest_file(Path(path), category=category)
            except FileValidationError as exc:
                logger.warning("Rejected %s: %s", name, exc)
                INGEST_OUTCOMES.labels(kind="unknown", outcome="rejected").inc()
                report.outcomes.append(FileOutcome(file_name=name, status="rejected", cause=str(exc)))
                continue
            report.outcomes.append(outcome_for(run))
        if self.on_refresh is not None and report.outcomes:
            self.on_refresh()
        return report

    def ingest_file(
        self,
        path: Path,
        title: str | None = None,
        category: str | None = None,
        content_type: str | None = None,
    ) -> IngestionRun:
        """Validate and run one file until it finishes or needs a decision.

        Raises ``FileValidationError`` before any backend call when the file is
        unreadable, of an unsupported type or over the size ceiling.
        """
        path = path.expanduser()
        try:
            size = path.stat().st_size
            kind = validate_upload(path.name, size, self.settings.max_file_bytes, content_type)
            data = path.read_bytes()
        except OSError as exc:
            raise FileValidationError(f"{path.name}: cannot read file ({exc})") from exc
        run = IngestionRun(
            state=IngestionState(),
            data=data,
            kind=kind,
            title=title or strip_extension(path.name),
            category=category or self.settings.default_category,
            content_type=MIME_BY_KIND[kind],
        )
        logger.info("Ingesting %s (%s, %s bytes)", path.name, kind.value, len(data))
        return self._drive(run, FileSelected(file_name=path.name, file_kind=kind))

    def resume(self, run: IngestionRun, choice: Choice | str) -> IngestionRun:
        """Continue a run halted in ``ocr_pending`` with the caller's decision."""
        return self._drive(run, UserDecision(choice=Choice(choice)))

    # Internal helpers -------------------------------------------------

    def _drive(self, run: IngestionRun, event: Event) -> IngestionRun:
        while True:
            effect = self._apply(run, event)
            if effect is Effect.AWAIT_USER:
                choice = self.decide(run.state) if self.decide is not None else None
                if choice is None:
                    logger.info("%s awaiting OCR decision", run.state.file_name)
                    break
                choice = Choice(choice)
                if choice in available_choices(run.state):
                    event = UserDecision(choice=choice)
                else:
                    event = Failure(cause=f"{choice.value} is not available for {run.kind.value} files")
                continue
            if effect is Effect.COMPENSATE:
                self._compensate(run)
                break
            if effect is Effect.NONE:
                break
            try:
                event = self._execute(run, effect)
            except Exception as exc:
                logger.exception("Ingestion of %s failed during %s", run.state.file_name, effect.value)
                event = Failure(cause=str(exc))

        if run.state.stage.is_terminal:
            self._record_outcome(run)
        return run

    def _apply(self, run: IngestionRun, event: Event) -> Effect:
        run.state, effect = transition(run.state, event)
        if self.progress is not None:
            self.progress(run.state)
        return effect

    def _execute(self, run: IngestionRun, effect: Effect) -> Event:
        name = run.state.file_name
        if effect is Effect.EXTRACT:
            run.extraction = self.extractor.extract(run.kind, run.data, name)
            run.full_text = run.extraction.full_text
            return ExtractionFinished(needs_ocr=run.extraction.needs_ocr)

        if effect is Effect.CHECK_QUALITY:
            result = validate_text_quality(
                run.full_text,
                expected_language=self.settings.expected_language,
                min_confidence=self.settings.min_confidence,
            )
            QUALITY_VERDICTS.labels(recommendation=result.recommendation).inc()
            run.quality = result
            if not result.is_valid:
                logger.warning(
                    "Low text quality for %s (confidence %.2f): %s",
                    name,
                    result.confidence,
                    "; ".join(result.issues),
                )
            return QualityChecked(result=result)

        if effect is Effect.RUN_OCR:
            run.full_text = self.ocr_engine.recognize(run.data, name)
            return OcrFinished()

        if effect is Effect.UPLOAD:
            upload = self.client.get_upload_url(name, run.content_type)
            self.transport.put(upload.signed_url, run.data, run.content_type)
            return UploadFinished(storage_path=upload.path)

        if effect is Effect.PROCESS:
            if run.kind is FileKind.DOCX:
                return self._process_on_server(run)
            return self._send_text(run)

        raise ValueError(f"unhandled effect {effect.value}")

    def _process_on_server(self, run: IngestionRun) -> Event:
        response = self.client.process_upload(
            file_path=run.state.storage_path or "",
            title=run.title,
            category=run.category,
            file_type=run.content_type,
            original_name=run.state.file_name,
        )
        document_id = response.resolved_document_id
        status, warning = response.status, response.warning
        if document_id:
            self._apply(run, DocumentCreated(document_id=document_id))
        if status == DocumentStatus.UPLOADED.value and document_id:
            processed = self.poller.process_document(document_id)
            status, warning = processed.status, processed.warning
        return ProcessingFinished(document_id=document_id, status=status, warning=warning)

    def _send_text(self, run: IngestionRun) -> Event:
        metadata = self._metadata(run)
        text = run.full_text
        storage_path = run.state.storage_path
        size = payload_metrics(text)
        if size["warning"]:
            logger.warning("%s: %s", run.state.file_name, size["warning"])

        if not needs_batching(text, self.settings.batch_threshold_bytes):
            response = self.client.ingest_text(run.title, run.category, text, metadata, file_path=storage_path)
            self._track_if_pending(response.document_id, response.status)
            return ProcessingFinished(document_id=response.document_id, status=response.status, warning=response.warning)

        batches = build_batches(text, self.settings.max_batch_bytes)
        started = self.client.ingest_start(run.title, run.category, metadata, file_path=storage_path)
        document_id = started.document_id
        self._apply(run, BatchingStarted(document_id=document_id, batches=tuple(batch.text for batch in batches)))
        logger.info(
            "Sending %s in %s batches",
            run.state.file_name,
            len(batches),
            extra={"ctx_document_id": document_id, "ctx_mb": size["estimated_mb"]},
        )
        for batch in batches:
            try:
                self.client.ingest_batch(document_id, batch.text, batch.index, batch.total_batches)
            except Exception as exc:
                raise BatchTransmissionError(batch.index, batch.total_batches, exc) from exc
            BATCHES_SENT.inc()
            self._apply(run, BatchSent(index=batch.index))

        response = self.client.ingest_finish(document_id)
        self._track_if_pending(document_id, response.status)
        return ProcessingFinished(document_id=document_id, status=response.status, warning=response.warning)

    def _metadata(self, run: IngestionRun) -> IngestionMetadata:
        state = run.state
        return IngestionMetadata(
            extraction_method=state.extraction_method or "text",
            quality_score=run.quality.confidence if run.quality else None,
            quality_issues=list(run.quality.issues) if run.quality else [],
            user_override=state.user_override,
            original_filename=state.file_name,
            total_pages=run.extraction.total_pages if run.extraction else None,
            extracted_at=utc_now(),
        )

    def _track_if_pending(self, document_id: str | None, status: str) -> None:
        if document_id and status in _PENDING_DOCUMENT_STATUSES:
            self.poller.track(document_id)

    def _compensate(self, run: IngestionRun) -> None:
        path = run.state.storage_path
        if not path:
            return
        document_id = run.state.job.document_id
        if document_id:
            # Uncommitted batched document; deleting it also removes the stored object.
            logger.info("Removing partial document %s after failed ingestion", document_id)
            try:
                self.client.delete_document(document_id)
                return
            except Exception:
                logger.exception("Removal of partial document %s failed", document_id)
        logger.info("Removing stored object %s after failed ingestion", path)
        try:
            self.client.delete_storage_object(path)
        except Exception:
            logger.exception("Cleanup of %s failed", path)

    def _record_outcome(self, run: IngestionRun) -> None:
        stage = run.state.stage
        INGEST_OUTCOMES.labels(kind=run.kind.value, outcome=stage.value).inc()
        INGEST_DURATION.labels(kind=run.kind.value).observe(time.monotonic() - run.started_at)
        if stage is IngestionStage.FAILED:
            logger.error("%s failed: %s", run.state.file_name, run.state.error)
        elif stage is IngestionStage.DONE:
            logger.info(
                "%s ingested with status %s",
                run.state.file_name,
                run.state.document_status,
                extra={"ctx_document_id": run.state.job.document_id, "ctx_warning": run.state.warning},
            )


def outcome_for(run: IngestionRun) -> FileOutcome:
    state = run.state
    status: OutcomeStatus
    if state.stage is IngestionStage.DONE:
        status = "done"
    elif state.stage is IngestionStage.CANCELLED:
        status = "cancelled"
    elif state.stage is IngestionStage.OCR_PENDING:
        status = "awaiting_decision"
    else:
        status = "failed"
    return FileOutcome(
        file_name=state.file_name,
        status=status,
        cause=state.error,
        document_id=state.job.document_id,
        document_status=state.document_status,
        warning=state.warning,
        run=run,
    )


__all__ = [
    "IngestionRun",
    "FileOutcome",
    "IngestReport",
    "IngestionOrchestrator",
    "outcome_for",
]
