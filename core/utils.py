"""
Core utility functions shared across modules.
"""
import os
from datetime import datetime, timezone
from urllib.parse import urljoin, urlparse

from core import constants

UTC = timezone.utc


def get_now() -> datetime:
    """
    Get current datetime in UTC.

    Always returns a timezone-aware datetime object, used for manifest
    download timestamps and run directory names.
    """
    return datetime.now(UTC)


def get_run_timestamp() -> str:
    """Timestamp used in run directory names, e.g. 2024-12-01-13-05-09."""
    return get_now().strftime("%Y-%m-%d-%H-%M-%S")


def safe_filename(filename: str) -> str:
    """
    Sanitize a path component by replacing unsafe characters.

    Args:
        filename: Original name (asset name, image name)

    Returns:
        Sanitized name safe for the filesystem
    """
    unsafe_chars = '<>:"/\\|?*'
    for char in unsafe_chars:
        filename = filename.replace(char, "_")
    filename = filename.strip()
    if filename in ("", ".", ".."):
        return "_"
    return truncate_filename(filename)


def truncate_filename(filename: str, max_bytes: int = constants.MAX_FILENAME_BYTES) -> str:
    """Shortens a name to max_bytes of UTF-8, keeping a short extension intact."""
    if len(filename.encode("utf-8")) <= max_bytes:
        return filename

    stem, ext = os.path.splitext(filename)
    if len(ext.encode("utf-8")) > 16:
        stem, ext = filename, ""
    budget = max_bytes - len(ext.encode("utf-8"))
    # errors="ignore" drops a multi-byte character cut in half
    stem = stem.encode("utf-8")[:budget].decode("utf-8", errors="ignore").rstrip()
    return f"{stem or '_'}{ext}"


def join_url(base: str, path: str) -> str:
    """Joins a path to a base URL, keeping absolute URLs untouched."""
    if urlparse(path).scheme:
        return path
    return urljoin(base.rstrip("/") + "/", path.lstrip("/"))


def format_validation_errors(error) -> list:
    """Flattens a pydantic ValidationError into "loc: msg" strings."""
    return [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in error.errors()]
