from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field


class Generation(Document):
    """One successful provider result. Never updated after insert."""
    user_id: PydanticObjectId
    hero_key: str
    variant: str  # "boy" | "girl"
    image_url: str
    reservation_id: PydanticObjectId | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "generations"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("reservation_id", 1)],
        ]
