"""
Image byte storage in a Supabase Storage bucket.

Objects are keyed ``{account_id}/{name}``; the bucket is public, so the URLs
returned here can be handed directly to fal.ai and the browser.
"""

import logging
import mimetypes
import uuid

import httpx

from fluxstudio.config.config import Config
from fluxstudio.config.supabase_config import execute_with_retry
from fluxstudio.utils.exceptions import ExternalOperationError
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 60.0


def _object_key(account_id: str, filename: str) -> str:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "png"
    return f"{account_id}/{uuid.uuid4().hex}.{extension}"


def store(account_id: str, data: bytes, filename: str, content_type: str | None = None) -> str:
    """
    Upload bytes and return the object's public URL.

    Raises:
        ExternalOperationError: If the upload fails
    """
    key = _object_key(account_id, filename)
    content_type = content_type or mimetypes.guess_type(filename)[0] or "image/png"

    def _upload(client):
        bucket = client.storage.from_(Config.IMAGE_BUCKET)
        bucket.upload(key, data, {"content-type": content_type})
        return bucket.get_public_url(key)

    try:
        url = execute_with_retry(_upload, operation_name="storage_upload")
    except Exception as e:
        logger.error(f"Failed to store {sanitize_for_logging(filename)} for {sanitize_for_logging(account_id)}: {e}")
        raise ExternalOperationError("storage", "Failed to store image") from e

    logger.info(f"Stored image {key} ({len(data)} bytes)")
    return url


def store_from_url(account_id: str, source_url: str, filename: str) -> str | None:
    """
    Copy a remote image (e.g. a short-lived fal.ai result) into the bucket.

    Returns:
        The permanent URL, or None if the copy failed and the caller should
        keep the source URL
    """
    try:
        with httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
            response = client.get(source_url)
            response.raise_for_status()
        content_type = response.headers.get("content-type", "image/png").split(";")[0]
        return store(account_id, response.content, filename, content_type)
    except (httpx.HTTPError, ExternalOperationError) as e:
        logger.warning(f"Could not migrate {sanitize_for_logging(source_url)} to permanent storage: {e}")
        return None


def delete_by_url(url: str) -> bool:
    """Best-effort removal of an object previously returned by ``store``."""
    marker = f"/object/public/{Config.IMAGE_BUCKET}/"
    if marker not in url:
        return False
    key = url.split(marker, 1)[1].split("?", 1)[0]

    def _remove(client):
        return client.storage.from_(Config.IMAGE_BUCKET).remove([key])

    try:
        execute_with_retry(_remove, operation_name="storage_remove")
        return True
    except Exception as e:
        logger.warning(f"Failed to remove stored image {key}: {e}")
        return False
