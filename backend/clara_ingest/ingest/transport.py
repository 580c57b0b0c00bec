"""Signed-URL upload transport with bounded exponential-backoff retry."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from clara_ingest.core.errors import FileTooLargeForDevice, TransportError
from clara_ingest.core.logging import get_logger
from clara_ingest.core.metrics import UPLOAD_ATTEMPTS

logger = get_logger(__name__)

T = TypeVar("T")

_MOBILE_UA_RE = re.compile(r"Android|iPhone|iPad|iPod|Mobile|Opera Mini|IEMobile", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class DeviceProfile:
    name: str
    timeout_seconds: float
    max_bytes: int


MOBILE_PROFILE = DeviceProfile(name="mobile", timeout_seconds=120.0, max_bytes=10 * 1024 * 1024)
DESKTOP_PROFILE = DeviceProfile(name="desktop", timeout_seconds=60.0, max_bytes=50 * 1024 * 1024)


def device_profile(user_agent: str | None) -> DeviceProfile:
    if user_agent and _MOBILE_UA_RE.search(user_agent):
        return MOBILE_PROFILE
    return DESKTOP_PROFILE


def is_retryable(exc: BaseException) -> bool:
    """Transient failures: non-terminal HTTP errors, timeouts and dropped connections."""
    if isinstance(exc, TransportError):
        return not exc.terminal
    return isinstance(exc, (requests.Timeout, requests.ConnectionError))


def retry_call(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    is_retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` up to ``max_attempts`` times, waiting ``base_delay * 2**(n-1)`` after failure n.

    Errors rejected by ``is_retryable`` propagate immediately; once attempts run
    out the last error is re-raised unchanged.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(fn)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    delay = state.next_action.sleep if state.next_action else 0
    logger.warning("Attempt %s failed (%s); retrying in %.1fs", state.attempt_number, exc, delay)


class UploadTransport:
    """PUT file bytes to a pre-signed storage URL."""

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.profile = device_profile(user_agent)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def put(self, signed_url: str, data: bytes, content_type: str) -> None:
        if len(data) > self.profile.max_bytes:
            raise FileTooLargeForDevice(
                f"file too large for {self.profile.name} upload "
                f"({len(data) / 1024 / 1024:.1f}MB > {self.profile.max_bytes // (1024 * 1024)}MB)"
            )

        def attempt() -> None:
            try:
                response = self.session.put(
                    signed_url,
                    data=data,
                    headers={"Content-Type": content_type or "application/octet-stream", "Cache-Control": "no-cache"},
                    timeout=self.profile.timeout_seconds,
                )
            except requests.RequestException:
                UPLOAD_ATTEMPTS.labels(outcome="network_error").inc()
                raise
            if not response.ok:
                UPLOAD_ATTEMPTS.labels(outcome=str(response.status_code)).inc()
                raise TransportError.from_status(response.status_code, response.text)
            UPLOAD_ATTEMPTS.labels(outcome="ok").inc()

        retry_call(
            attempt,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )
        logger.info("Uploaded %s bytes via signed URL", len(data), extra={"ctx_device": self.profile.name})


__all__ = [
    "DeviceProfile",
    "MOBILE_PROFILE",
    "DESKTOP_PROFILE",
    "device_profile",
    "is_retryable",
    "retry_call",
    "UploadTransport",
]
