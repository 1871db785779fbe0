"""
Validation helpers for user-controlled input.

Covers log-injection sanitising and the checks applied to uploaded images
before their bytes reach the storage bucket.
"""

import logging

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_CONTENT_TYPES = frozenset(
    {
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/webp",
        "image/gif",
    }
)


def sanitize_for_logging(value: str) -> str:
    """Sanitize user-controlled strings for safe logging.

    Prevents log injection attacks by removing newlines and other control characters
    that could be used to forge log entries.

    Args:
        value: String value to sanitize (can be None)

    Returns:
        Sanitized string with newlines replaced by spaces
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")


def validate_image_upload(content_type: str | None, size: int, max_bytes: int) -> str | None:
    """
    Check an uploaded file before storing it.

    Returns:
        None when the upload is acceptable, otherwise a user-facing error message.
    """
    if not content_type or content_type.lower() not in ALLOWED_IMAGE_CONTENT_TYPES:
        return "Only PNG, JPEG, WebP and GIF images are supported"
    if size <= 0:
        return "Uploaded file is empty"
    if size > max_bytes:
        return f"Image exceeds the {max_bytes // (1024 * 1024)}MB upload limit"
    return None
