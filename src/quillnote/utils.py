"""Utility functions for the Quillnote server."""
import re

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

MAX_FILENAME_LENGTH = 120


def sanitize_filename(filename: str) -> str:
    """Reduce an uploaded file name to something safe inside a storage path.

    Strips any directory components, replaces runs of unsafe characters
    with a single underscore and caps the length while keeping the
    extension.

    Examples:
        "holiday photo.jpg" -> "holiday_photo.jpg"
        "../../etc/passwd" -> "passwd"
        "" -> "file"

    Args:
        filename: The client-supplied file name.

    Returns:
        A non-empty name containing only alphanumerics, '.', '_' and '-'.
    """
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("._")
    if not name:
        return "file"
    if len(name) > MAX_FILENAME_LENGTH:
        stem, dot, ext = name.rpartition(".")
        if dot and len(ext) < 16:
            name = stem[: MAX_FILENAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            name = name[:MAX_FILENAME_LENGTH]
    return name


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
    """
    escape_table = str.maketrans({
        '\\': '\\\\',
        '%': '\\%',
        '_': '\\_',
    })
    return value.translate(escape_table)
