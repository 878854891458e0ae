"""Stripe webhook reconciliation."""

import asyncio

import orjson
import pytest
from pymongo.errors import PyMongoError

from app.core.exceptions import InvalidEventSignatureError
from app.models.payment_event import PaymentEvent
from app.services import credits as credits_service
from app.services import payments as payments_service

from helpers import FakeNotifier, checkout_event, credits_metadata, sign_payload

BOOK_METADATA = {
    "intent": "book",
    "payment_method": "card",
    "userId": "66f1c0ffee0000000000abcd",
    "userEmail": "parent@example.com",
    "material": "premium",
    "quantity": "2",
    "addr_fullName": "Dana Parent",
    "addr_phone": "+359 888 000 000",
    "addr_country": "BG",
    "addr_city": "Sofia",
    "addr_zip": "1000",
    "addr_line1": "1 Vitosha Blvd",
    "addr_line2": "",
    "addr_notes": "Ring twice",
}


async def deliver(payload: bytes, notifier=None):
    return await payments_service.handle_webhook(payload, sign_payload(payload), notifier=notifier)


async def test_grant_event_delivered_three_times(user):
    payload = checkout_event("evt_grant_30", credits_metadata(user.id, 30))
    statuses = [(await deliver(payload))["status"] for _ in range(3)]
    assert statuses == ["applied", "duplicate", "duplicate"]
    assert await credits_service.get_balance(user.id) == 30
    record = await PaymentEvent.find_one(PaymentEvent.event_id == "evt_grant_30")
    assert record.processed is True
    assert record.amount == 30
    assert record.user_id == user.id


async def test_concurrent_redelivery_grants_once(user):
    payload = checkout_event("evt_race", credits_metadata(user.id, 30))
    results = await asyncio.gather(*(deliver(payload) for _ in range(5)))
    assert all(r["received"] for r in results)
    assert [r["status"] for r in results].count("applied") == 1
    assert await credits_service.get_balance(user.id) == 30


async def test_distinct_events_each_grant(user):
    await deliver(checkout_event("evt_a", credits_metadata(user.id, 10)))
    await deliver(checkout_event("evt_b", credits_metadata(user.id, 100)))
    assert await credits_service.get_balance(user.id) == 110


async def test_bad_signature_rejected_without_mutation(user):
    payload = checkout_event("evt_forged", credits_metadata(user.id, 1000))
    with pytest.raises(InvalidEventSignatureError):
        await payments_service.handle_webhook(payload, sign_payload(payload, secret="whsec_wrong"))
    with pytest.raises(InvalidEventSignatureError):
        await payments_service.handle_webhook(payload, None)
    assert await credits_service.get_balance(user.id) == 0
    assert await PaymentEvent.find_one(PaymentEvent.event_id == "evt_forged") is None


async def test_tampered_payload_rejected(user):
    payload = checkout_event("evt_tamper", credits_metadata(user.id, 10))
    header = sign_payload(payload)
    tampered = payload.replace(b'"10"', b'"999"')
    with pytest.raises(InvalidEventSignatureError):
        await payments_service.handle_webhook(tampered, header)
    assert await credits_service.get_balance(user.id) == 0


async def test_signed_garbage_rejected(db):
    payload = b"not json at all"
    with pytest.raises(InvalidEventSignatureError):
        await payments_service.handle_webhook(payload, sign_payload(payload))


async def test_other_event_types_ignored(user):
    payload = checkout_event("evt_other", credits_metadata(user.id, 30), event_type="payment_intent.succeeded")
    assert (await deliver(payload))["status"] == "ignored"
    assert await credits_service.get_balance(user.id) == 0


async def test_unpaid_session_ignored(user):
    payload = checkout_event("evt_unpaid", credits_metadata(user.id, 30), payment_status="unpaid")
    assert (await deliver(payload))["status"] == "ignored"
    payload = checkout_event("evt_sub", credits_metadata(user.id, 30), mode="subscription")
    assert (await deliver(payload))["status"] == "ignored"
    assert await credits_service.get_balance(user.id) == 0


async def test_unknown_intent_acknowledged(user):
    payload = checkout_event("evt_gift", {"intent": "gift_card", "userId": str(user.id)})
    assert await deliver(payload) == {"received": True, "status": "ignored"}
    assert await PaymentEvent.find_one(PaymentEvent.event_id == "evt_gift") is None


@pytest.mark.parametrize("metadata", [
    {"intent": "credits", "creditsPurchased": "30"},
    {"intent": "credits", "userId": "not-an-object-id", "creditsPurchased": "30"},
    {"intent": "credits", "userId": "66f1c0ffee0000000000abcd", "creditsPurchased": "0"},
    {"intent": "credits", "userId": "66f1c0ffee0000000000abcd", "creditsPurchased": "thirty"},
])
async def test_bad_credit_metadata_ignored(db, metadata):
    payload = checkout_event("evt_bad_md", metadata)
    assert (await deliver(payload))["status"] == "ignored"
    assert await PaymentEvent.find_one(PaymentEvent.event_id == "evt_bad_md") is None


async def test_book_order_notified_once(user):
    notifier = FakeNotifier()
    payload = checkout_event("evt_book", BOOK_METADATA)
    first = await deliver(payload, notifier)
    second = await deliver(payload, notifier)
    assert first["status"] == "notified"
    assert second["status"] == "duplicate"
    assert len(notifier.orders) == 1
    order = notifier.orders[0]
    assert order["material"] == "premium"
    assert order["quantity"] == 2
    assert order["address"]["city"] == "Sofia"
    assert order["totals"] == {"amount_total": 1499, "currency": "usd"}
    assert order["stripe_session_id"] == "cs_test_evt_book"
    assert await credits_service.get_balance(user.id) == 0


async def test_book_notification_failure_still_acknowledged(db):
    notifier = FakeNotifier(error=ConnectionError("smtp down"))
    payload = checkout_event("evt_book_fail", BOOK_METADATA)
    assert (await deliver(payload, notifier))["status"] == "notified"
    record = await PaymentEvent.find_one(PaymentEvent.event_id == "evt_book_fail")
    assert record.processed is True


async def test_failed_grant_is_retried_by_reprocess(user, monkeypatch):
    real_grant = credits_service.grant

    async def broken_grant(*args, **kwargs):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(credits_service, "grant", broken_grant)
    payload = checkout_event("evt_retry", credits_metadata(user.id, 30))
    assert (await deliver(payload))["status"] == "pending"
    assert await credits_service.get_balance(user.id) == 0

    monkeypatch.setattr(credits_service, "grant", real_grant)
    assert await payments_service.reprocess_pending_events() == 1
    assert await credits_service.get_balance(user.id) == 30
    assert await payments_service.reprocess_pending_events() == 0
    # a late redelivery is now a no-op
    assert (await deliver(payload))["status"] == "duplicate"
    assert await credits_service.get_balance(user.id) == 30


async def test_recording_failure_propagates_for_redelivery(user, monkeypatch):
    async def broken_insert(self, *args, **kwargs):
        raise PyMongoError("no primary")

    monkeypatch.setattr(PaymentEvent, "insert", broken_insert)
    payload = checkout_event("evt_nodb", credits_metadata(user.id, 30))
    with pytest.raises(PyMongoError):
        await deliver(payload)
    assert await credits_service.get_balance(user.id) == 0


def test_build_order_defaults():
    order = payments_service.build_order({"id": "cs_1", "metadata": {"material": "basic", "quantity": "x"}})
    assert order["quantity"] == 1
    assert order["payment_method"] == "card"
    assert order["address"]["line1"] == ""
    assert order["stripe_session_id"] == "cs_1"


def test_parse_event_requires_id():
    with pytest.raises(InvalidEventSignatureError):
        payments_service.parse_event(orjson.dumps({"type": "checkout.session.completed"}).decode())
