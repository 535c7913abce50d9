"""Utility functions for the Graphon index."""
import hashlib
from pathlib import PurePosixPath
from typing import Union


def content_checksum(content: Union[str, bytes]) -> str:
    """Compute the MD5 checksum used to detect note changes.

    Args:
        content: Note text (encoded as UTF-8) or raw bytes.

    Returns:
        Hex digest string (32 characters).
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.md5(content).hexdigest()


def file_id_for_path(relative_path: str) -> str:
    """Derive the stable file ID for a vault-relative path.

    The ID is the first 16 hex characters of the path's SHA-256, so it is
    path-keyed: renaming a note gives it a new ID.
    """
    return hashlib.sha256(relative_path.encode("utf-8")).hexdigest()[:16]


def strip_note_extension(path: str) -> str:
    """Drop the file extension from a vault-relative path ("dir/A.md" -> "dir/A")."""
    posix = PurePosixPath(path)
    if not posix.suffix:
        return path
    return str(posix.with_suffix(""))


def note_stem(path: str) -> str:
    """File name without extension ("dir/A.md" -> "A")."""
    return PurePosixPath(path).stem


def escape_like_pattern(value: str) -> str:
    """Escape LIKE wildcards so user text matches literally.

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
