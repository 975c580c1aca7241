"""Utility functions for the note store."""
import re
from pathlib import PurePosixPath
from typing import Optional


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    # Use str.translate() for single-pass efficiency
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def normalize_rel_path(value: str) -> str:
    """Normalize a stored relative path to forward slashes without a leading '/'."""
    return value.replace("\\", "/").lstrip("/")


def is_safe_rel_path(value: str) -> bool:
    """True for a relative path that cannot climb out of the folder it is joined to.

    Rejects empty paths, absolute paths (POSIX, UNC and drive-letter forms)
    and any path with a ``..`` segment.
    """
    if not value:
        return False
    normalized = value.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"[A-Za-z]:", normalized):
        return False
    return ".." not in normalized.split("/")


def strip_prefix_repeated(value: str, prefix: str) -> str:
    """Remove every leading occurrence of ``prefix`` from ``value``."""
    if not prefix:
        return value
    while value.startswith(prefix):
        value = value[len(prefix):]
    return value


def safe_filename(name: str, fallback: str = "file") -> str:
    """Reduce a user-supplied filename to a single safe path component.

    Directory parts are dropped so the result can never escape the folder
    it is joined to.

    Args:
        name: Filename as supplied by the caller (may contain directories).
        fallback: Name used when nothing usable remains.

    Returns:
        A non-empty filename without separators.
    """
    candidate = PurePosixPath(name.replace("\\", "/")).name.strip()
    if candidate in ("", ".", ".."):
        return fallback
    return candidate


def filename_from_url(url: str) -> Optional[str]:
    """Return the last path segment of a URL, ignoring the query string."""
    trimmed = url.split("?", 1)[0].split("#", 1)[0]
    last = trimmed.rsplit("/", 1)[-1]
    return last or None


def ext_from_filename(filename: str) -> Optional[str]:
    """Lower-cased extension of ``filename`` without the dot, if any."""
    suffix = PurePosixPath(filename).suffix
    ext = suffix.strip().lstrip(".").lower()
    return ext or None
