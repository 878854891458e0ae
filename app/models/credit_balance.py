from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel

# applied_grants keeps only the most recent keys; older redeliveries are
# stopped earlier by PaymentEvent.processed.
APPLIED_GRANTS_KEPT = 500


class CreditBalance(Document):
    """Current balance per user; only mutated through atomic updates in services.credits."""
    user_id: PydanticObjectId
    balance: int = 0
    holds: list[str] = Field(default_factory=list)  # ids of reservations whose credits are taken but not yet released
    applied_grants: list[str] = Field(default_factory=list)  # recent grant idempotency keys

    class Settings:
        name = "credit_balances"
        indexes = [IndexModel([("user_id", ASCENDING)], unique=True)]
