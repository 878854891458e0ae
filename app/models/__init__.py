from app.models.user import User
from app.models.credit_balance import CreditBalance
from app.models.credit_ledger import CreditLedgerEntry
from app.models.credit_reservation import CreditReservation
from app.models.generation import Generation
from app.models.payment_event import PaymentEvent
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "CreditBalance",
    "CreditLedgerEntry",
    "CreditReservation",
    "Generation",
    "PaymentEvent",
    "AuditLog",
]
