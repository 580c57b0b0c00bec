"""Shared client-side singletons."""

from __future__ import annotations

from functools import lru_cache

from clara_ingest.api.client import BackendClient
from clara_ingest.core.config import Settings, get_settings
from clara_ingest.ingest.pipeline import DecisionCallback, IngestionOrchestrator, ProgressCallback
from clara_ingest.ingest.poller import JobPoller

_CLIENT: BackendClient | None = None
_POLLER: JobPoller | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_backend_client() -> BackendClient:
    global _CLIENT
    if _CLIENT is None:
        _CLIENT = BackendClient(get_app_settings())
    return _CLIENT


def get_job_poller() -> JobPoller:
    global _POLLER
    if _POLLER is None:
        settings = get_app_settings()
        _POLLER = JobPoller(
            get_backend_client(),
            interval=settings.poll_interval_seconds,
            stuck_after=settings.stuck_after_seconds,
        )
    return _POLLER


def get_orchestrator(
    decide: DecisionCallback | None = None,
    progress: ProgressCallback | None = None,
) -> IngestionOrchestrator:
    """Build an orchestrator sharing the process-wide client and poller."""
    return IngestionOrchestrator(
        client=get_backend_client(),
        settings=get_app_settings(),
        poller=get_job_poller(),
        decide=decide,
        progress=progress,
    )


def reset_dependencies() -> None:
    global _CLIENT, _POLLER
    if _POLLER is not None:
        _POLLER.stop()
    _CLIENT = None
    _POLLER = None
    get_app_settings.cache_clear()


__all__ = [
    "get_app_settings",
    "get_backend_client",
    "get_job_poller",
    "get_orchestrator",
    "reset_dependencies",
]
