"""Stripe webhook: verify, record the event durably, apply it exactly once."""

from datetime import datetime
from typing import Any

import orjson
from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.audit import log_event
from app.core.exceptions import InvalidEventSignatureError
from app.core.logging import get_logger
from app.core.security import verify_stripe_signature
from app.models.payment_event import PaymentEvent
from app.services import credits as credits_service
from app.services.notifications import Notifier, get_notifier

log = get_logger(__name__)

INTENT_CREDITS = "credits"
INTENT_BOOK = "book"

# Stripe caps metadata values at 500 chars; checkout truncates to this.
METADATA_MAX_LEN = 480


def _meta(md: dict[str, Any], key: str) -> str:
    return str(md.get(key) or "").strip()[:METADATA_MAX_LEN]


def build_order(session: dict[str, Any]) -> dict[str, Any]:
    """Order payload for the shop admin, read from the session's trusted metadata."""
    md = session.get("metadata") or {}
    try:
        quantity = max(1, int(md.get("quantity") or 1))
    except (TypeError, ValueError):
        quantity = 1
    return {
        "user_id": _meta(md, "userId"),
        "user_email": _meta(md, "userEmail"),
        "material": _meta(md, "material"),
        "quantity": quantity,
        "payment_method": _meta(md, "payment_method") or "card",
        "address": {
            "full_name": _meta(md, "addr_fullName"),
            "phone": _meta(md, "addr_phone"),
            "country": _meta(md, "addr_country"),
            "city": _meta(md, "addr_city"),
            "zip": _meta(md, "addr_zip"),
            "line1": _meta(md, "addr_line1"),
            "line2": _meta(md, "addr_line2"),
            "notes": _meta(md, "addr_notes"),
        },
        "totals": {
            "amount_total": session.get("amount_total"),
            "currency": session.get("currency"),
        },
        "stripe_session_id": session.get("id"),
    }


def _credit_grant(md: dict[str, Any]) -> tuple[PydanticObjectId, int] | None:
    raw_user_id = md.get("userId")
    if not raw_user_id:
        return None
    try:
        user_id = PydanticObjectId(raw_user_id)
        amount = int(md.get("creditsPurchased") or 0)
    except (InvalidId, TypeError, ValueError):
        return None
    if amount <= 0:
        return None
    return user_id, amount


def parse_event(payload: str) -> dict[str, Any]:
    try:
        event = orjson.loads(payload)
    except orjson.JSONDecodeError:
        raise InvalidEventSignatureError("Webhook payload is not valid JSON")
    if not isinstance(event, dict) or not event.get("id"):
        raise InvalidEventSignatureError("Webhook payload is not a Stripe event")
    return event


async def _record(event_id: str, **fields: Any) -> tuple[PaymentEvent, bool]:
    """Insert the event, or load the existing one. Returns (event, created)."""
    record = PaymentEvent(event_id=event_id, **fields)
    try:
        await record.insert()
        return record, True
    except DuplicateKeyError:
        existing = await PaymentEvent.find_one(PaymentEvent.event_id == event_id)
        return existing, False


async def _mark_processed(record: PaymentEvent) -> bool:
    """Flip processed false -> true. Returns False if someone else already did."""
    doc = await PaymentEvent.get_motor_collection().find_one_and_update(
        {"_id": record.id, "processed": False},
        {"$set": {"processed": True, "processed_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        return False
    record.processed = True
    record.processed_at = doc.get("processed_at")
    return True


async def apply_credit_event(record: PaymentEvent) -> bool:
    """Grant the event's credits (idempotent on event_id) and flag the event processed."""
    applied = await credits_service.grant(
        record.user_id,
        record.amount,
        record.event_id,
        reason="purchase",
        reference_type="stripe_event",
    )
    await _mark_processed(record)
    if applied:
        await log_event(
            str(record.user_id),
            "payment_captured",
            "payment_event",
            record.event_id,
            {"credits": record.amount, "session_id": record.session_id},
        )
    return applied


async def handle_webhook(payload: bytes, signature: str | None, notifier: Notifier | None = None) -> dict[str, Any]:
    """
    Verify HMAC and apply the event. Returns the acknowledgement body.
    Raises InvalidEventSignatureError (nothing written) on a bad signature or payload.
    PyMongoError while recording the event propagates so the processor redelivers.
    """
    text = verify_stripe_signature(payload, signature)
    event = parse_event(text)
    event_id = event["id"]
    event_type = event.get("type")
    log.info("stripe_event", event_id=event_id, event_type=event_type)

    if event_type != "checkout.session.completed":
        return {"received": True, "status": "ignored"}
    session = (event.get("data") or {}).get("object") or {}
    if session.get("mode") != "payment" or session.get("payment_status") != "paid":
        return {"received": True, "status": "ignored"}
    md = session.get("metadata") or {}
    intent = md.get("intent")

    if intent == INTENT_CREDITS:
        grant = _credit_grant(md)
        if grant is None:
            log.error("credit_event_bad_metadata", event_id=event_id, metadata=md)
            return {"received": True, "status": "ignored"}
        user_id, amount = grant
        record, created = await _record(
            event_id, intent=INTENT_CREDITS, session_id=session.get("id"), user_id=user_id, amount=amount
        )
        if not created and record.processed:
            log.info("stripe_event_duplicate", event_id=event_id)
            return {"received": True, "status": "duplicate"}
        try:
            applied = await apply_credit_event(record)
        except PyMongoError as e:
            # recorded but not applied; reprocess_pending_events retries it
            log.error("credit_event_apply_failed", event_id=event_id, error=str(e))
            return {"received": True, "status": "pending"}
        return {"received": True, "status": "applied" if applied else "duplicate"}

    if intent == INTENT_BOOK:
        order = build_order(session)
        record, _ = await _record(event_id, intent=INTENT_BOOK, session_id=session.get("id"), order=order)
        if not await _mark_processed(record):
            log.info("stripe_event_duplicate", event_id=event_id)
            return {"received": True, "status": "duplicate"}
        notifier = notifier or get_notifier()
        try:
            await notifier.notify_order(order)
        except Exception as e:  # noqa: BLE001
            log.error("order_notification_failed", event_id=event_id, error=str(e))
        await log_event(order["user_id"] or None, "order_paid", "payment_event", event_id, {"material": order["material"]})
        return {"received": True, "status": "notified"}

    log.info("stripe_event_unknown_intent", event_id=event_id, intent=intent)
    return {"received": True, "status": "ignored"}


async def reprocess_pending_events() -> int:
    """Apply credit events that were recorded but never marked processed. Returns how many were retried."""
    pending = await PaymentEvent.find(
        PaymentEvent.processed == False,  # noqa: E712
        PaymentEvent.intent == INTENT_CREDITS,
    ).to_list()
    retried = 0
    for record in pending:
        try:
            await apply_credit_event(record)
        except PyMongoError as e:
            log.error("stripe_event_reprocess_failed", event_id=record.event_id, error=str(e))
            continue
        log.info("stripe_event_reprocessed", event_id=record.event_id)
        retried += 1
    return retried
