"""CLI entrypoint for the Clara ingestion client."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import List, NoReturn, Optional

import typer

from clara_ingest.api.dependencies import get_app_settings, get_backend_client, get_job_poller, get_orchestrator
from clara_ingest.core.errors import ClaraIngestError, RetryNotAllowed
from clara_ingest.core.logging import configure_logging
from clara_ingest.core.metrics import render_metrics
from clara_ingest.ingest.loaders import TextExtractor, detect_file_kind
from clara_ingest.ingest.quality import validate_text_quality
from clara_ingest.ingest.state import Choice, IngestionState, available_choices
from clara_ingest.models.entities import IN_PROGRESS_STATUSES
from clara_ingest.utils.time import utc_now

app = typer.Typer(name="clara-ingest", help="Clara knowledge-base ingestion client")


class OnDoubt(str, Enum):
    ASK = "ask"
    USE_TEXT = "use-text"
    OCR = "ocr"
    CANCEL = "cancel"


_CHOICE_BY_FLAG = {
    OnDoubt.USE_TEXT: Choice.USE_TEXT,
    OnDoubt.OCR: Choice.OCR,
    OnDoubt.CANCEL: Choice.CANCEL,
}


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs/--plain-logs", help="Emit JSON log lines"),
) -> None:
    configure_logging(level=log_level.upper(), use_json=json_logs)


def _fail(message: str) -> NoReturn:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


def _ask_user(state: IngestionState) -> Choice:
    quality = state.quality or {}
    typer.echo(f"\n{state.file_name}: extracted text looks unreliable.")
    if quality:
        typer.echo(f"  confidence: {quality.get('confidence', 0):.0%}")
        for issue in quality.get("issues", []):
            typer.echo(f"  - {issue}")
        if quality.get("text_preview"):
            typer.echo(f"  preview: {quality['text_preview']}")
    else:
        typer.echo("  the PDF has little or no text layer (scanned document?)")
    choices = available_choices(state)
    default = Choice.OCR if Choice.OCR in choices else Choice.CANCEL
    options = "/".join(choice.value for choice in choices)
    answer = typer.prompt(f"How should this file continue? [{options}]", default=default.value)
    try:
        choice = Choice(answer.strip().lower())
    except ValueError:
        choice = None
    if choice not in choices:
        typer.echo(f"Unknown choice {answer!r}, cancelling.", err=True)
        return Choice.CANCEL
    return choice


@app.command()
def ingest(
    files: List[Path] = typer.Argument(..., help="PDF, DOCX or TXT files to ingest"),
    category: Optional[str] = typer.Option(None, "--category", help="Document category"),
    on_doubt: OnDoubt = typer.Option(OnDoubt.ASK, "--on-doubt", help="What to do when text quality is doubtful"),
    wait: bool = typer.Option(False, "--wait/--no-wait", help="Poll background jobs until they finish"),
) -> None:
    """Ingest documents into the knowledge base."""
    if on_doubt is OnDoubt.ASK:
        decide = _ask_user
    else:
        fixed = _CHOICE_BY_FLAG[on_doubt]

        def decide(state: IngestionState) -> Choice:
            return fixed

    orchestrator = get_orchestrator(decide=decide)
    report = orchestrator.ingest_files(files, category=category)
    for outcome in report.outcomes:
        if outcome.status == "done":
            line = f"OK   {outcome.file_name}: {outcome.document_status}"
            if outcome.warning:
                line += f" (warning: {outcome.warning})"
            typer.echo(line)
        else:
            typer.echo(f"{outcome.status.upper():<5}{outcome.file_name}: {outcome.cause or outcome.status}", err=True)
    if report.summary:
        typer.echo(report.summary)

    if wait:
        orchestrator.poller.stop()
        ticks = orchestrator.poller.run_until_idle()
        typer.echo(f"Background processing finished after {ticks} polls")
    if report.has_errors:
        raise typer.Exit(code=1)


@app.command()
def check(
    file: Path = typer.Argument(..., help="PDF or TXT file to analyse"),
) -> None:
    """Extract text locally and print the quality report."""
    settings = get_app_settings()
    try:
        kind = detect_file_kind(file.name)
        extraction = TextExtractor().extract(kind, file.read_bytes(), file.name)
    except (ClaraIngestError, OSError) as exc:
        _fail(str(exc))
    result = validate_text_quality(
        extraction.full_text,
        expected_language=settings.expected_language,
        min_confidence=settings.min_confidence,
    )
    payload = {
        "file": file.name,
        "pages": extraction.total_pages,
        "needs_ocr": extraction.needs_ocr,
        "pages_needing_ocr": extraction.pages_needing_ocr,
        "is_hybrid": extraction.is_hybrid,
        "lang": extraction.lang,
        "page_metrics": extraction.metrics.to_dict(),
        "quality": result.to_dict(),
    }
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@app.command()
def documents() -> None:
    """List documents with their processing status."""
    poller = get_job_poller()
    try:
        docs = get_backend_client().list_documents()
    except ClaraIngestError as exc:
        _fail(str(exc))
    now = utc_now()
    rows = [
        {
            "id": doc.id,
            "title": doc.title,
            "status": poller.display_status(doc, now),
            "chunks": doc.total_chunks,
            "error": doc.error_reason,
            "updated_at": doc.updated_at.isoformat(),
        }
        for doc in docs
    ]
    typer.echo(json.dumps(rows, indent=2, ensure_ascii=False))


@app.command()
def retry(
    document_id: str = typer.Argument(..., help="Document identifier"),
) -> None:
    """Re-run chunking for a stuck or failed document."""
    poller = get_job_poller()
    try:
        docs = get_backend_client().list_documents()
        document = next((doc for doc in docs if doc.id == document_id), None)
        if document is None:
            _fail(f"Document {document_id} not found")
        response = poller.retry_document(document)
    except RetryNotAllowed as exc:
        _fail(str(exc))
    except ClaraIngestError as exc:
        _fail(f"Retry failed: {exc}")
    typer.echo(json.dumps(response.model_dump(), indent=2, ensure_ascii=False))
    if len(poller.in_flight):
        poller.stop()
        poller.run_until_idle()


@app.command()
def poll(
    max_ticks: Optional[int] = typer.Option(None, "--max-ticks", help="Stop after this many polls"),
) -> None:
    """Drive background processing jobs until none remain."""
    poller = get_job_poller()
    try:
        docs = get_backend_client().list_documents()
    except ClaraIngestError as exc:
        _fail(str(exc))
    for doc in docs:
        if doc.status in IN_PROGRESS_STATUSES:
            poller.in_flight.add(doc.id)
    if not len(poller.in_flight):
        typer.echo("No documents in progress")
        return
    typer.echo(f"Polling {len(poller.in_flight)} document(s)")
    ticks = poller.run_until_idle(max_ticks=max_ticks)
    remaining = len(poller.in_flight)
    typer.echo(f"{ticks} polls, {remaining} document(s) still in progress")


@app.command()
def metrics() -> None:
    """Print Prometheus metrics for this process."""
    payload, _ = render_metrics()
    typer.echo(payload.decode("utf-8"))


if __name__ == "__main__":
    app()
