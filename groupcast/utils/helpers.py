"""Utility functions for groupcast."""

import re
from datetime import datetime, timezone
from pathlib import Path

_WHITESPACE_RE = re.compile(r"\s+")

# Protocol timestamps below this are seconds, above it milliseconds.
_MS_THRESHOLD = 10_000_000_000


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def normalize_text(text: str | None) -> str:
    """Lowercase, trim and collapse whitespace for fuzzy text comparison."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text.strip().lower())


def normalize_timestamp_ms(value: int | float | None) -> int:
    """Normalize a protocol timestamp (seconds or milliseconds) to milliseconds."""
    if value is None:
        return 0
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return 0
    if ts <= 0:
        return 0
    if ts < _MS_THRESHOLD:
        ts *= 1000
    return int(ts)


def iso_from_ms(timestamp_ms: int) -> str:
    """Render a millisecond timestamp as ISO-8601 UTC."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()
