"""Exception hierarchy for the ingestion client."""

from __future__ import annotations

UPLOAD_ERROR_MESSAGES: dict[int, str] = {
    400: "Bad request - check the file format",
    403: "Signed URL expired or forbidden - request a new one",
    404: "Bucket or path not found - check the storage configuration",
    409: "Conflict - an object with the same name already exists",
    413: "File too large - size limit exceeded",
    429: "Too many requests - wait and try again",
    500: "Internal server error - try again",
    502: "Bad gateway - service temporarily unavailable",
    503: "Service unavailable - try again in a few minutes",
}

TERMINAL_STATUSES = frozenset({403, 404, 409, 413, 429})


def describe_http_status(status: int, body: str = "") -> str:
    """Map an HTTP status to a human-readable cause."""
    return UPLOAD_ERROR_MESSAGES.get(status) or f"HTTP {status}: {body or 'unknown error'}"


class ClaraIngestError(Exception):
    """Base exception for the ingestion client."""


class FileValidationError(ClaraIngestError):
    """Raised when a file is rejected before any network call."""


class ExtractionError(ClaraIngestError):
    """Raised when text cannot be extracted from a file."""


class OcrError(ClaraIngestError):
    """Raised when the OCR fallback produces no usable text."""


class TransportError(ClaraIngestError):
    """Raised when an upload to a signed URL fails."""

    terminal = False

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @classmethod
    def from_status(cls, status: int, body: str = "") -> "TransportError":
        message = f"upload failed ({status}): {describe_http_status(status, body)}"
        if status in TERMINAL_STATUSES:
            return TerminalTransportError(message, status=status)
        return cls(message, status=status)


class TerminalTransportError(TransportError):
    """Upload failure that must not be retried."""

    terminal = True


class FileTooLargeForDevice(TerminalTransportError):
    """File exceeds the upload cap of the current device class."""


class BackendError(ClaraIngestError):
    """Raised when a backend endpoint answers with a non-2xx status."""

    def __init__(self, message: str, status: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint


class BatchTransmissionError(ClaraIngestError):
    """Raised when one batch of a multi-batch ingestion fails; the document is aborted."""

    def __init__(self, batch_number: int, total_batches: int, cause: Exception) -> None:
        super().__init__(f"batch {batch_number}/{total_batches} failed: {cause}")
        self.batch_number = batch_number
        self.total_batches = total_batches
        self.cause = cause


class InvalidTransition(ClaraIngestError):
    """Raised when an event is not accepted in the current ingestion state."""


class RetryNotAllowed(ClaraIngestError):
    """Raised when a retry is requested for a document that is not retryable."""


__all__ = [
    "UPLOAD_ERROR_MESSAGES",
    "TERMINAL_STATUSES",
    "describe_http_status",
    "ClaraIngestError",
    "FileValidationError",
    "ExtractionError",
    "OcrError",
    "TransportError",
    "TerminalTransportError",
    "FileTooLargeForDevice",
    "BackendError",
    "BatchTransmissionError",
    "InvalidTransition",
    "RetryNotAllowed",
]
