"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing uploaded file names before they are stored on a record
- Ensuring directory creation with proper error handling
- Cutting manuscript text down to a prompt-sized excerpt
"""

from __future__ import annotations

import re
from pathlib import Path

# Pattern to match characters that are not safe in a stored file name
# Allows: alphanumeric characters, dots, underscores, hyphens and spaces
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._ -]+")

DEFAULT_FILE_NAME = "unnamed.pdf"


def sanitize_file_name(filename: str | None, fallback: str = DEFAULT_FILE_NAME) -> str:
    """
    Reduce a client-supplied file name to a safe display name.

    Any directory components are dropped and unsafe characters are replaced
    with hyphens.

    Args:
        filename: The name sent by the client, possibly empty
        fallback: Value returned when nothing usable remains

    Returns:
        A safe file name or the fallback value

    Example:
        >>> sanitize_file_name("../../My Novel?.pdf")
        "My Novel-.pdf"
        >>> sanitize_file_name("")
        "unnamed.pdf"
    """
    if not filename:
        return fallback
    name = Path(filename.replace("\\", "/")).name
    cleaned = SANITIZE_PATTERN.sub("-", name.strip()).strip(" .")
    return cleaned or fallback


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


def truncate_text(text: str, max_chars: int, marker: str = "...") -> str:
    """Return at most ``max_chars`` characters of ``text``, marking the cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker
