"""
Image records and their append-only edit history
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EditHistoryItem:
    """One successful edit or generation; each item corresponds to one charge."""

    prompt: str
    image_url: str
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, str]:
        return {"prompt": self.prompt, "imageUrl": self.image_url, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EditHistoryItem":
        return cls(
            prompt=data.get("prompt", ""),
            image_url=data.get("imageUrl", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class ImageRecord:
    id: int
    account_id: str
    original_url: str
    current_url: str
    edit_history: list[EditHistoryItem] = field(default_factory=list)
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ImageRecord":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            original_url=row["original_url"],
            current_url=row["current_url"],
            edit_history=[EditHistoryItem.from_dict(item) for item in row.get("edit_history") or []],
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "originalUrl": self.original_url,
            "currentUrl": self.current_url,
            "editHistory": [item.to_dict() for item in self.edit_history],
            "createdAt": self.created_at,
        }
