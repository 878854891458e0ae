from datetime import datetime
from typing import Any

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class PaymentEvent(Document):
    """Stripe event accepted by the webhook; event_id is the dedup key."""
    event_id: Indexed(str, unique=True)
    intent: str  # "credits" | "book"
    session_id: str | None = None
    user_id: PydanticObjectId | None = None
    amount: int = 0  # credits for intent=credits
    order: dict[str, Any] = Field(default_factory=dict)  # payload for intent=book
    processed: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: datetime | None = None

    class Settings:
        name = "payment_events"
        indexes = [[("processed", 1), ("created_at", 1)]]
