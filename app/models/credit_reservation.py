from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field


class CreditReservation(Document):
    """
    Hold against a balance for the lifetime of one batch.

    The hold itself lives in CreditBalance.holds; this document records the
    amount and, once settled, the charge. `released` flips after the unused
    part has gone back to the balance.
    """
    user_id: PydanticObjectId
    amount: int
    unit_cost: int = 1  # credits per unit of work, used by the recovery sweep
    reference: str | None = None  # e.g. "batch:boy"
    settled: bool = False
    charged: int | None = None  # set on settle
    released: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    settled_at: datetime | None = None

    class Settings:
        name = "credit_reservations"
        indexes = [
            [("settled", 1), ("created_at", 1)],
            [("released", 1), ("created_at", 1)],
            [("user_id", 1), ("created_at", -1)],
        ]
