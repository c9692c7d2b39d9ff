"""
Security utilities for the Health Ingest service.

Uploaded archives are addressed by client-supplied `<ownerId>/<filename>`
paths. Before such a path reaches the storage client it is validated here so
that a request cannot read or delete objects outside the upload prefix it
names.

The checks block:
- Path traversal (`../`, URL-encoded or Unicode look-alike dots)
- Control and invisible Unicode characters
- Keys longer than the S3 limit of 1024 UTF-8 bytes
"""

import re
import unicodedata
import urllib.parse
from pathlib import PurePosixPath

from .exceptions import ValidationError

_INVALID_CONTROL_CHARS: set[int] = set(range(0x00, 0x20)) | {0x7F}  # includes DEL

_UNICODE_INVISIBLES: set[int] = {
    0x200B,  # Zero Width Space
    0x200C,  # Zero Width Non-Joiner
    0x200D,  # Zero Width Joiner
    0xFEFF,  # Zero Width No-Break Space (BOM)
    0x202E,  # Right-to-Left Override
    0x202D,  # Left-to-Right Override
    0x202C,  # Pop Directional Formatting
    0x2028,  # Line Separator
    0x2029,  # Paragraph Separator
}

_UNICODE_DOTS: set[str] = {
    "．．",  # Fullwidth dots
    "。。",  # Ideographic full stops
    "․․",  # One dot leaders
    "｡｡",  # Halfwidth ideographic periods
}

_MAX_KEY_BYTES = 1024
_MAX_UNQUOTE_PASSES = 5
_BACKSLASH = re.compile(r"\\")


def _has_traversal(path: str) -> bool:
    normalized = _BACKSLASH.sub("/", path)
    if any(part == ".." for part in normalized.split("/")):
        return True
    return any(dots in normalized for dots in _UNICODE_DOTS)


def sanitize_storage_path(path: str) -> str:
    """
    Validate and normalize an archive path supplied by a client.

    Args:
        path: The `<ownerId>/<filename>` style object key.

    Returns:
        The normalized key, without leading slashes or `.` segments.

    Raises:
        ValidationError: If the path is not a string, is empty, too long,
            contains control or invisible characters, or escapes its prefix.

    Examples:
        >>> sanitize_storage_path("u1/export.zip")
        'u1/export.zip'
        >>> sanitize_storage_path("/u1/./export.zip")
        'u1/export.zip'
    """
    if not isinstance(path, str):
        raise ValidationError(
            "Storage path is not a valid string",
            error_code="INVALID_PATH_TYPE",
            context={"path": repr(path), "type": type(path).__name__},
        )

    if len(path.encode("utf-8")) > _MAX_KEY_BYTES:
        raise ValidationError(
            "Storage path exceeds byte length limit",
            error_code="INVALID_PATH_LENGTH",
            context={"path_length": len(path.encode("utf-8"))},
        )

    for char in path:
        code = ord(char)
        if code in _INVALID_CONTROL_CHARS or code in _UNICODE_INVISIBLES:
            raise ValidationError(
                "Storage path contains invalid characters",
                error_code="INVALID_PATH_CHARACTER",
                context={"path": path, "char_code": hex(code)},
            )
        if unicodedata.category(char) == "Cf":
            raise ValidationError(
                "Storage path contains invalid characters",
                error_code="INVALID_PATH_CHARACTER",
                context={"path": path, "char_code": hex(code)},
            )

    if not path.strip() or any(part != part.strip() for part in path.split("/")):
        raise ValidationError(
            "Storage path is empty or has surrounding whitespace",
            error_code="INVALID_PATH_FORMAT",
            context={"path": path},
        )

    # Recursively decode URL encoding until stable to catch nested encodings
    decoded = path
    for _ in range(_MAX_UNQUOTE_PASSES):
        new_decoded = urllib.parse.unquote(decoded)
        if new_decoded == decoded:
            break
        decoded = new_decoded

    if _has_traversal(path) or _has_traversal(decoded):
        raise ValidationError(
            "Storage path contains path traversal components",
            error_code="UNSAFE_PATH",
            context={"path": path},
        )

    safe_path = str(PurePosixPath(path)).lstrip("/")
    if safe_path in {"", "."}:
        raise ValidationError(
            "Storage path resolves to an empty key",
            error_code="UNSAFE_PATH",
            context={"path": path},
        )
    return safe_path
