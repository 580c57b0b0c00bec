"""Background poller that drives server-side processing jobs to completion."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable

from clara_ingest.core.errors import RetryNotAllowed
from clara_ingest.core.logging import get_logger
from clara_ingest.core.metrics import IN_FLIGHT
from clara_ingest.models.dto import IngestResponse, ProcessJobResponse
from clara_ingest.models.entities import IN_PROGRESS_STATUSES, Document, DocumentStatus
from clara_ingest.utils.time import utc_now

if TYPE_CHECKING:
    from clara_ingest.api.client import BackendClient

logger = get_logger(__name__)

RefreshCallback = Callable[[], None]

STUCK_STATUS = "stuck"

# Jobs only ever move a document to ready or failed.
_AWAITING_JOB_STATUSES = frozenset({DocumentStatus.UPLOADED, DocumentStatus.PROCESSING, DocumentStatus.INGESTING})


class InFlightSet:
    """Lock-guarded set of document ids awaiting background processing."""

    def __init__(self, document_ids: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._ids: set[str] = set(document_ids)
        IN_FLIGHT.set(len(self._ids))

    def add(self, document_id: str) -> bool:
        with self._lock:
            added = document_id not in self._ids
            self._ids.add(document_id)
            IN_FLIGHT.set(len(self._ids))
        return added

    def discard(self, document_id: str) -> bool:
        with self._lock:
            removed = document_id in self._ids
            self._ids.discard(document_id)
            IN_FLIGHT.set(len(self._ids))
        return removed

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ids)

    def __contains__(self, document_id: object) -> bool:
        with self._lock:
            return document_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class JobPoller:
    """Call ``process-job`` every ``interval`` seconds while documents are in flight."""

    def __init__(
        self,
        client: "BackendClient",
        interval: float = 3.0,
        stuck_after: float = 300.0,
        on_refresh: RefreshCallback | None = None,
    ) -> None:
        self.client = client
        self.interval = interval
        self.stuck_after = stuck_after
        self.on_refresh = on_refresh
        self.in_flight = InFlightSet()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def track(self, document_id: str) -> None:
        if self.in_flight.add(document_id):
            logger.info("Tracking document %s", document_id)
        self.start()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None or not len(self.in_flight):
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="clara-job-poller",
                daemon=True,
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def tick(self) -> ProcessJobResponse | None:
        """Advance one server-side job; errors are logged and swallowed so polling continues.

        A failed job answers with an error and an idle queue answers without a
        status; both leave tracked ids unresolved, so they are checked against
        the document list instead.
        """
        try:
            response = self.client.process_job()
        except Exception:
            logger.exception("process-job tick failed")
            self.reconcile()
            return None
        if response.status == "completed" and response.document_id:
            self.in_flight.discard(response.document_id)
            logger.info("Document %s finished processing", response.document_id)
            self._refresh()
        elif response.status is None:
            self.reconcile()
        return response

    def reconcile(self) -> set[str]:
        """Drop tracked ids whose document no longer awaits a job; returns the dropped ids."""
        tracked = self.in_flight.snapshot()
        if not tracked:
            return set()
        try:
            documents = {doc.id: doc for doc in self.client.list_documents()}
        except Exception:
            logger.exception("Document list refresh failed")
            return set()
        dropped = set()
        for document_id in tracked:
            document = documents.get(document_id)
            if document is not None and document.status in _AWAITING_JOB_STATUSES:
                continue
            self.in_flight.discard(document_id)
            dropped.add(document_id)
            logger.info(
                "Document %s no longer awaits processing (%s)",
                document_id,
                document.status.value if document is not None else "deleted",
                extra={"ctx_error_reason": document.error_reason if document is not None else None},
            )
        if dropped:
            self._refresh()
        return dropped

    def run_until_idle(self, sleep: Callable[[float], None] = time.sleep, max_ticks: int | None = None) -> int:
        """Poll in the calling thread until nothing is in flight; returns the tick count."""
        ticks = 0
        while len(self.in_flight) and (max_ticks is None or ticks < max_ticks):
            self.tick()
            ticks += 1
            if len(self.in_flight):
                sleep(self.interval)
        return ticks

    def is_stuck(self, document: Document, now: datetime | None = None) -> bool:
        if document.status not in IN_PROGRESS_STATUSES:
            return False
        elapsed = ((now or utc_now()) - document.updated_at).total_seconds()
        return elapsed > self.stuck_after

    def display_status(self, document: Document, now: datetime | None = None) -> str:
        return STUCK_STATUS if self.is_stuck(document, now) else document.status.value

    def can_retry(self, document: Document, now: datetime | None = None) -> bool:
        if document.status in (DocumentStatus.FAILED, DocumentStatus.CHUNKS_OK_EMBED_PENDING):
            return True
        return self.is_stuck(document, now)

    def retry_document(self, document: Document, now: datetime | None = None) -> IngestResponse:
        """Re-run chunking for a stuck or failed document from its stored text."""
        if not self.can_retry(document, now):
            raise RetryNotAllowed(
                f"{document.title or document.id}: retry not allowed in status {self.display_status(document, now)}"
            )
        logger.info("Retrying document %s (was %s)", document.id, self.display_status(document, now))
        response = self.client.ingest_finish(document.id)
        self._after_backend_answer(document.id, response.status)
        return response

    def process_document(self, document_id: str) -> IngestResponse:
        """Ask the backend to extract and chunk an uploaded document."""
        response = self.client.process(document_id)
        self._after_backend_answer(document_id, response.status)
        return response

    # Internal helpers -------------------------------------------------

    def _after_backend_answer(self, document_id: str, status: str) -> None:
        if status == DocumentStatus.PROCESSING.value:
            self.track(document_id)
        else:
            self._refresh()

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            if self._release_if_idle():
                return
            self.tick()
            if self._release_if_idle():
                return

    def _release_if_idle(self) -> bool:
        with self._lock:
            if len(self.in_flight):
                return False
            if self._thread is threading.current_thread():
                self._thread = None
            return True

    def _refresh(self) -> None:
        if self.on_refresh is None:
            return
        try:
            self.on_refresh()
        except Exception:
            logger.exception("Refresh callback failed")


__all__ = ["InFlightSet", "JobPoller", "STUCK_STATUS"]
