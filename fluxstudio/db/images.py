import logging
from datetime import datetime, timezone

from fluxstudio.config.supabase_config import execute_with_retry
from fluxstudio.models.image import EditHistoryItem, ImageRecord
from fluxstudio.services.prometheus_metrics import track_database_query

logger = logging.getLogger(__name__)

IMAGES_TABLE = "images"


def create_image(
    account_id: str,
    original_url: str,
    current_url: str | None = None,
    edit_history: list[EditHistoryItem] | None = None,
) -> ImageRecord:
    row = {
        "account_id": account_id,
        "original_url": original_url,
        "current_url": current_url or original_url,
        "edit_history": [item.to_dict() for item in edit_history or []],
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    def _insert(client):
        return client.table(IMAGES_TABLE).insert(row).execute()

    with track_database_query(table=IMAGES_TABLE, operation="insert"):
        result = execute_with_retry(_insert, operation_name="create_image")

    if not result.data:
        raise RuntimeError("Image insert returned no data")

    return ImageRecord.from_row(result.data[0])


def get_image(image_id: int) -> ImageRecord | None:
    def _query(client):
        return client.table(IMAGES_TABLE).select("*").eq("id", image_id).limit(1).execute()

    with track_database_query(table=IMAGES_TABLE, operation="select"):
        result = execute_with_retry(_query, operation_name="get_image")

    return ImageRecord.from_row(result.data[0]) if result.data else None


def list_images(account_id: str) -> list[ImageRecord]:
    """Newest first."""

    def _query(client):
        return (
            client.table(IMAGES_TABLE)
            .select("*")
            .eq("account_id", account_id)
            .order("created_at", desc=True)
            .execute()
        )

    with track_database_query(table=IMAGES_TABLE, operation="select"):
        result = execute_with_retry(_query, operation_name="list_images")

    return [ImageRecord.from_row(row) for row in result.data or []]


def update_image(
    image_id: int, current_url: str, edit_history: list[EditHistoryItem]
) -> ImageRecord | None:
    payload = {
        "current_url": current_url,
        "edit_history": [item.to_dict() for item in edit_history],
    }

    def _update(client):
        return client.table(IMAGES_TABLE).update(payload).eq("id", image_id).execute()

    with track_database_query(table=IMAGES_TABLE, operation="update"):
        result = execute_with_retry(_update, operation_name="update_image")

    return ImageRecord.from_row(result.data[0]) if result.data else None


def delete_image(image_id: int) -> bool:
    def _delete(client):
        return client.table(IMAGES_TABLE).delete().eq("id", image_id).execute()

    with track_database_query(table=IMAGES_TABLE, operation="delete"):
        result = execute_with_retry(_delete, operation_name="delete_image")

    deleted = bool(result.data)
    if not deleted:
        logger.warning(f"Delete matched no image row for id {image_id}")
    return deleted
