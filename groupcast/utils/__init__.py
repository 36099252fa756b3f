"""Utility functions for groupcast."""

from groupcast.utils.helpers import ensure_dir, iso_from_ms, normalize_text, normalize_timestamp_ms

__all__ = ["ensure_dir", "iso_from_ms", "normalize_text", "normalize_timestamp_ms"]
