"""Credits ledger: atomic reserve / settle / grant on per-user balances.

Every balance change is a single conditional update on the user's
CreditBalance document, so concurrent callers can never drive a balance
negative. Grants and hold releases each apply at most once.
Ledger entries are an audit trail written after the fact; they never gate
a balance change.
"""

from datetime import datetime, timedelta

from beanie import PydanticObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.config import get_settings
from app.core.exceptions import InsufficientCreditsError
from app.core.logging import get_logger
from app.models.credit_balance import APPLIED_GRANTS_KEPT, CreditBalance
from app.models.credit_ledger import CreditLedgerEntry
from app.models.credit_reservation import CreditReservation
from app.models.generation import Generation

log = get_logger(__name__)

REASONS = ("reserve", "release", "purchase")


def _balances():
    return CreditBalance.get_motor_collection()


def _reservations():
    return CreditReservation.get_motor_collection()


async def get_balance(user_id: PydanticObjectId) -> int:
    """Return current balance for user (0 if no record)."""
    bal = await CreditBalance.find_one(CreditBalance.user_id == user_id)
    return bal.balance if bal else 0


async def _ensure_balance_doc(user_id: PydanticObjectId) -> None:
    try:
        await _balances().update_one(
            {"user_id": user_id},
            {"$setOnInsert": {"balance": 0, "holds": [], "applied_grants": []}},
            upsert=True,
        )
    except DuplicateKeyError:
        # another caller created it between our filter and insert
        return


async def _append_ledger(
    user_id: PydanticObjectId,
    amount: int,
    balance_after: int,
    reason: str,
    reference_type: str | None = None,
    reference_id: str | None = None,
    idempotency_key: str | None = None,
) -> None:
    try:
        await CreditLedgerEntry(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        ).insert()
    except PyMongoError as e:
        log.warning("ledger_entry_failed", user_id=str(user_id), amount=amount, reason=reason, error=str(e))


async def reserve(
    user_id: PydanticObjectId,
    amount: int,
    unit_cost: int = 1,
    reference: str | None = None,
) -> CreditReservation:
    """
    Take `amount` credits out of the balance and return the hold.
    Raises InsufficientCreditsError (balance untouched) when the balance is short.

    The reservation document is written before any credits move, so every
    hold on a balance has a reservation the recovery sweep can find.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")
    reservation = CreditReservation(user_id=user_id, amount=amount, unit_cost=unit_cost, reference=reference)
    await reservation.insert()
    if amount == 0:
        return reservation

    rid = str(reservation.id)
    doc = await _balances().find_one_and_update(
        {"user_id": user_id, "balance": {"$gte": amount}, "holds": {"$ne": rid}},
        {"$inc": {"balance": -amount}, "$push": {"holds": rid}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        have = await get_balance(user_id)
        log.info("credits_insufficient", user_id=str(user_id), have=have, need=amount)
        await _discard(reservation)
        raise InsufficientCreditsError(have=have, need=amount)

    log.info("credits_reserved", user_id=str(user_id), amount=amount, reservation_id=rid)
    await _append_ledger(
        user_id, -amount, doc["balance"], "reserve",
        reference_type="reservation", reference_id=rid,
    )
    return reservation


async def _discard(reservation: CreditReservation) -> None:
    """Drop a reservation that never took credits. A leftover one holds nothing, so the sweep settles it at 0."""
    try:
        await reservation.delete()
    except PyMongoError as e:
        log.warning("reservation_discard_failed", reservation_id=str(reservation.id), error=str(e))


async def _release(reservation_id: PydanticObjectId, user_id: PydanticObjectId, refund: int) -> int:
    """
    Return `refund` credits and drop the hold in one update, then flag the
    reservation released. Safe to repeat: once the hold is gone nothing moves.
    Returns the credits actually returned.
    """
    rid = str(reservation_id)
    doc = await _balances().find_one_and_update(
        {"user_id": user_id, "holds": rid},
        {"$inc": {"balance": refund}, "$pull": {"holds": rid}},
        return_document=ReturnDocument.AFTER,
    )
    await _reservations().update_one({"_id": reservation_id}, {"$set": {"released": True}})
    if doc is None:
        return 0
    if refund > 0:
        await _append_ledger(
            user_id, refund, doc["balance"], "release",
            reference_type="reservation", reference_id=rid,
        )
    return refund


async def settle(reservation: CreditReservation, actual_used: int) -> int:
    """
    Resolve a reservation to its real charge and return the unused credits.
    Returns the number of credits released; 0 if the reservation was already settled.

    The charge is recorded first, then the unused part is released. If the
    release fails the reservation stays unreleased and settle_stale_reservations
    finishes it.
    """
    if actual_used < 0 or actual_used > reservation.amount:
        raise ValueError(f"actual_used must be within 0..{reservation.amount}")
    now = datetime.utcnow()
    claimed = await _reservations().find_one_and_update(
        {"_id": reservation.id, "settled": False},
        {"$set": {"settled": True, "charged": actual_used, "settled_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        log.debug("reservation_already_settled", reservation_id=str(reservation.id))
        return 0
    reservation.settled = True
    reservation.charged = actual_used
    reservation.settled_at = now

    refund = await _release(reservation.id, reservation.user_id, claimed["amount"] - actual_used)
    reservation.released = True
    log.info(
        "credits_settled",
        user_id=str(reservation.user_id),
        reservation_id=str(reservation.id),
        charged=actual_used,
        released=refund,
    )
    return refund


async def grant(
    user_id: PydanticObjectId,
    amount: int,
    idempotency_key: str,
    reason: str = "purchase",
    reference_type: str | None = None,
) -> bool:
    """Add credits once per idempotency_key. Returns True if newly applied."""
    if amount <= 0:
        raise ValueError("grant amount must be > 0")
    if reason not in REASONS:
        raise ValueError(f"Invalid reason: {reason}")
    await _ensure_balance_doc(user_id)
    doc = await _balances().find_one_and_update(
        {"user_id": user_id, "applied_grants": {"$ne": idempotency_key}},
        {
            "$inc": {"balance": amount},
            "$push": {"applied_grants": {"$each": [idempotency_key], "$slice": -APPLIED_GRANTS_KEPT}},
        },
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        log.info("grant_duplicate", user_id=str(user_id), idempotency_key=idempotency_key)
        return False
    log.info("credits_granted", user_id=str(user_id), amount=amount, idempotency_key=idempotency_key)
    await _append_ledger(
        user_id, amount, doc["balance"], reason,
        reference_type=reference_type, reference_id=idempotency_key, idempotency_key=idempotency_key,
    )
    return True


async def settle_stale_reservations(max_age: timedelta | None = None) -> int:
    """
    Finish reservations a crashed or failed batch left behind.

    Unsettled reservations older than max_age are charged for the generations
    already stored under them. Settled reservations whose unused credits never
    went back are released. Returns the number of reservations handled.
    """
    if max_age is None:
        max_age = timedelta(minutes=get_settings().stale_reservation_minutes)
    cutoff = datetime.utcnow() - max_age
    count = 0
    stale = await CreditReservation.find(
        CreditReservation.settled == False,  # noqa: E712
        CreditReservation.created_at < cutoff,
    ).to_list()
    for r in stale:
        try:
            persisted = await Generation.find(Generation.reservation_id == r.id).count()
            used = min(persisted * r.unit_cost, r.amount)
            await settle(r, used)
        except PyMongoError as e:
            log.error("stale_reservation_failed", reservation_id=str(r.id), error=str(e))
            continue
        log.warning("stale_reservation_settled", reservation_id=str(r.id), user_id=str(r.user_id), charged=used)
        count += 1

    unreleased = await CreditReservation.find(
        CreditReservation.settled == True,  # noqa: E712
        CreditReservation.released != True,  # noqa: E712
    ).to_list()
    for r in unreleased:
        try:
            refund = await _release(r.id, r.user_id, r.amount - (r.charged or 0))
        except PyMongoError as e:
            log.error("reservation_release_failed", reservation_id=str(r.id), error=str(e))
            continue
        log.warning("reservation_released", reservation_id=str(r.id), user_id=str(r.user_id), released=refund)
        count += 1
    return count


async def list_ledger(user_id: PydanticObjectId, limit: int = 50, offset: int = 0) -> list[CreditLedgerEntry]:
    return (
        await CreditLedgerEntry.find(CreditLedgerEntry.user_id == user_id)
        .sort(-CreditLedgerEntry.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


def get_pricing() -> dict:
    s = get_settings()
    return {"generation": s.credits_per_generation}
