"""Time helpers."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import TypeAdapter

_DATETIME = TypeAdapter(datetime)


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse backend timestamps; naive values are taken as UTC.

    Postgres trims trailing zeros from fractional seconds (``.12345+00:00``),
    which pydantic accepts on every supported interpreter.
    """
    if value is None or value == "":
        return None
    parsed = _DATETIME.validate_python(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
