"""Upload validation for attachments.

Validation never touches storage: it only inspects the declared name, size and
content type. The sanitized filename is computed first and returned with every
result, valid or not.
"""
import re
from typing import Dict, List, Optional

from .schemas import (
    ALLOWED_CONTENT_TYPES,
    MAX_FILE_SIZE_BYTES,
    MAX_FILENAME_LENGTH,
    ValidationResult,
)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.-]")
_REPEATED_DOTS = re.compile(r"\.{2,}")


def sanitize_file_name(file_name: str) -> str:
    """Make a client-supplied filename safe for display and key derivation.

    Path components are dropped, anything outside ``[A-Za-z0-9.-]`` becomes an
    underscore, runs of dots collapse to one, and the result is capped at
    MAX_FILENAME_LENGTH characters.

    Examples:
        >>> sanitize_file_name("../../etc/passwd")
        'passwd'
        >>> sanitize_file_name("my photo!!.png")
        'my_photo__.png'
        >>> sanitize_file_name("a...b.png")
        'a.b.png'
    """
    base = re.split(r"[\\/]", file_name or "")[-1]
    sanitized = _UNSAFE_CHARS.sub("_", base)
    sanitized = _REPEATED_DOTS.sub(".", sanitized)
    sanitized = sanitized[:MAX_FILENAME_LENGTH]
    return sanitized or "unnamed"


def get_file_extension(file_name: str) -> str:
    """Lower-cased extension including the dot, or ``""`` when there is none."""
    if "." not in file_name:
        return ""
    return "." + file_name.rsplit(".", 1)[-1].lower()


def validate_content_type(
    content_type: str,
    file_name: str,
    allowed: Optional[Dict[str, List[str]]] = None,
) -> Optional[str]:
    """Return the normalized content type if it is allowed for this file name."""
    allowed = allowed if allowed is not None else ALLOWED_CONTENT_TYPES
    normalized = (content_type or "").split(";", 1)[0].strip().lower()
    extensions = allowed.get(normalized)
    if not extensions:
        return None
    if get_file_extension(file_name) not in extensions:
        return None
    return normalized


def validate_attachment(
    name: str,
    size: int,
    content_type: str,
    max_size_bytes: int = MAX_FILE_SIZE_BYTES,
    allowed: Optional[Dict[str, List[str]]] = None,
) -> ValidationResult:
    """Validate an upload's declared metadata.

    Args:
        name: Filename as declared by the client.
        size: Payload size in bytes.
        content_type: MIME type as declared by the client.
        max_size_bytes: Size cap.
        allowed: Content type allow-list (defaults to ALLOWED_CONTENT_TYPES).

    Returns:
        ValidationResult with the sanitized name and, when valid, the
        normalized content type.
    """
    sanitized_name = sanitize_file_name(name)

    if size > max_size_bytes:
        return ValidationResult(
            is_valid=False,
            sanitized_name=sanitized_name,
            error=(
                "File size exceeds maximum allowed size of "
                f"{max_size_bytes / (1024 * 1024):g}MB"
            ),
        )

    if size <= 0:
        return ValidationResult(
            is_valid=False,
            sanitized_name=sanitized_name,
            error="File is empty",
        )

    normalized = validate_content_type(content_type, sanitized_name, allowed)
    if normalized is None:
        return ValidationResult(
            is_valid=False,
            sanitized_name=sanitized_name,
            error="Invalid content type or file extension mismatch",
        )

    return ValidationResult(
        is_valid=True,
        sanitized_name=sanitized_name,
        content_type=normalized,
    )
