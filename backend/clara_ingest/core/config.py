"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "CLARA_"
DEFAULT_CONFIG_PATH = Path("~/.config/clara-ingest/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("backend", "url"): "backend_url",
    ("backend", "admin_key"): "admin_key",
    ("backend", "bucket"): "storage_bucket",
    ("backend", "timeout"): "request_timeout",
    ("limits", "max_file_mb"): "max_file_mb",
    ("limits", "batch_threshold_bytes"): "batch_threshold_bytes",
    ("limits", "max_batch_bytes"): "max_batch_bytes",
    ("upload", "max_attempts"): "upload_max_attempts",
    ("upload", "base_delay"): "upload_base_delay",
    ("upload", "user_agent"): "user_agent",
    ("quality", "language"): "expected_language",
    ("quality", "min_confidence"): "min_confidence",
    ("ocr", "pages_per_batch"): "ocr_pages_per_batch",
    ("ocr", "render_scale"): "ocr_render_scale",
    ("ocr", "jpeg_quality"): "ocr_jpeg_quality",
    ("poller", "interval"): "poll_interval_seconds",
    ("poller", "stuck_after"): "stuck_after_seconds",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    backend_url: str = "http://127.0.0.1:54321/functions/v1"
    admin_key: str = ""
    storage_bucket: str = "knowledge-base"
    request_timeout: float = Field(default=120.0, gt=0)
    default_category: str = "manual"
    max_file_mb: int = Field(default=50, ge=1)
    batch_threshold_bytes: int = Field(default=1_048_576, ge=1)
    max_batch_bytes: int = Field(default=400_000, ge=4)
    upload_max_attempts: int = Field(default=3, ge=1)
    upload_base_delay: float = Field(default=1.0, ge=0)
    user_agent: str = "clara-ingest/0.1 (desktop)"
    expected_language: Literal["pt-BR", "en"] = "pt-BR"
    min_confidence: float = Field(default=0.6, ge=0, le=1)
    ocr_pages_per_batch: int = Field(default=5, ge=1)
    ocr_render_scale: float = Field(default=2.0, gt=0)
    ocr_jpeg_quality: int = Field(default=85, ge=1, le=100)
    poll_interval_seconds: float = Field(default=3.0, gt=0)
    stuck_after_seconds: float = Field(default=300.0, gt=0)

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("backend_url", mode="before")
    @classmethod
    def _strip_backend_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise TypeError("backend_url must be a string")
        return value.rstrip("/")

    @property
    def max_file_bytes(self) -> int:
        return self.max_file_mb * 1024 * 1024

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML sections to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with CLARA_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
