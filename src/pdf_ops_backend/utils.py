"""
Utility functions for file system operations, filename handling and locators.

This module provides helper functions for:
- Sanitizing uploaded filenames for safe filesystem usage
- Ensuring directory creation
- Deriving download/preview locators from stored filenames
- Formatting byte counts for logs and stats
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

API_PREFIX = "/api/pdf"

# Pattern to match characters that are not safe for stored filenames
# Allows: alphanumeric characters, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9_-]+")

_BYTE_UNITS = ["Bytes", "KB", "MB", "GB", "TB", "PB"]


def sanitize_stem(stem: str, fallback: str = "document") -> str:
    """
    Generate a filesystem-safe stem from user input.

    Args:
        stem: The original filename stem
        fallback: Value returned when nothing usable remains

    Returns:
        A filesystem-safe stem or the fallback value

    Example:
        >>> sanitize_stem("My Report (final)")
        "My_Report_final"
        >>> sanitize_stem("@#$")
        "document"
    """
    cleaned = SANITIZE_PATTERN.sub("_", stem.strip())
    cleaned = cleaned.strip("_-")
    return cleaned or fallback


def make_stored_name(original_name: str, unique: Optional[str] = None) -> str:
    """
    Build the on-disk name for an uploaded file.

    The sanitized original stem is kept for readability and a random suffix
    guarantees uniqueness, e.g. ``report-1f3a9c0e5b7d4e21.pdf``.
    """
    stem = sanitize_stem(Path(original_name).stem)
    suffix = unique or uuid4().hex[:16]
    return f"{stem}-{suffix}.pdf"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def resolve_within(base: Path, filename: str) -> Optional[Path]:
    """
    Resolve ``filename`` inside ``base``, refusing anything that escapes it.

    Returns:
        The resolved path, or None if the name would leave the base directory
    """
    base_path = base.resolve()
    candidate = (base_path / filename).resolve()
    if candidate.parent != base_path:
        return None
    return candidate


def format_bytes(size: int, decimals: int = 2) -> str:
    """
    Format a byte count for humans.

    Example:
        >>> format_bytes(1536)
        "1.5 KB"
    """
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    index = 0
    while value >= 1024 and index < len(_BYTE_UNITS) - 1:
        value /= 1024
        index += 1
    return f"{round(value, max(decimals, 0)):g} {_BYTE_UNITS[index]}"


def allowed_pdf_extensions() -> Iterable[str]:
    return [".pdf"]


def is_pdf_upload(filename: str, content_type: Optional[str]) -> bool:
    suffix = Path(filename).suffix.lower()
    return suffix in allowed_pdf_extensions() or (content_type or "") == "application/pdf"


def file_download_url(filename: str) -> str:
    return f"{API_PREFIX}/download/{filename}"


def file_preview_url(filename: str) -> str:
    return f"{API_PREFIX}/preview/{filename}"


def operation_status_url(operation_id: str) -> str:
    return f"{API_PREFIX}/status/{operation_id}"


def operation_download_url(operation_id: str) -> str:
    return f"{API_PREFIX}/download-operation/{operation_id}"


def operation_preview_url(operation_id: str) -> str:
    return f"{API_PREFIX}/preview-operation/{operation_id}"
