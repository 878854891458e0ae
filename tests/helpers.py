"""Test doubles and Stripe payload helpers."""

import asyncio
import hashlib
import hmac
import os
import time
from typing import Any

import orjson
from httpx import AsyncClient
from pymongo.errors import PyMongoError

from app.providers.base import ImageProvider
from app.services.notifications import Notifier

WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")


class FakeProvider(ImageProvider):
    """Returns https://cdn.test/<prompt>.jpg; prompts in `fail` raise, prompts in `outputs` return that value."""
    name = "fake"

    def __init__(
        self,
        fail: tuple[str, ...] = (),
        outputs: dict[str, Any] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.fail = set(fail)
        self.outputs = outputs or {}
        self.delays = delays or {}
        self.calls: list[str] = []
        self.events: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, prompt: str, input_image: str) -> Any:
        self.calls.append(prompt)
        self.events.append(("start", prompt))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(prompt, 0.001))
            if prompt in self.fail:
                raise RuntimeError(f"provider rejected {prompt}")
            if prompt in self.outputs:
                return self.outputs[prompt]
            return f"https://cdn.test/{prompt}.jpg"
        finally:
            self.in_flight -= 1
            self.events.append(("end", prompt))


class FakeNotifier(Notifier):
    def __init__(self, error: Exception | None = None):
        self.orders: list[dict[str, Any]] = []
        self.error = error

    async def notify_order(self, order: dict[str, Any]) -> None:
        self.orders.append(order)
        if self.error:
            raise self.error


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for payload."""
    ts = timestamp or int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def checkout_event(
    event_id: str,
    metadata: dict[str, Any],
    mode: str = "payment",
    payment_status: str = "paid",
    event_type: str = "checkout.session.completed",
) -> bytes:
    return orjson.dumps({
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": f"cs_test_{event_id}",
                "object": "checkout.session",
                "mode": mode,
                "payment_status": payment_status,
                "amount_total": 1499,
                "currency": "usd",
                "metadata": metadata,
            }
        },
    })


def credits_metadata(user_id, credits: int = 30) -> dict[str, str]:
    return {
        "intent": "credits",
        "userId": str(user_id),
        "userEmail": "parent@example.com",
        "creditsPurchased": str(credits),
        "pack": f"c{credits}",
    }


def login(client: AsyncClient, user) -> None:
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME
    client.cookies.set(
        SESSION_COOKIE_NAME,
        create_session_cookie({"user_id": str(user.id), "session_version": user.session_version}),
    )


class FailingReleaseCollection:
    """Wraps the balances collection; the release update (the one that pulls a hold) raises."""

    def __init__(self, collection):
        self.collection = collection
        self.failed = 0

    def __getattr__(self, name):
        return getattr(self.collection, name)

    async def find_one_and_update(self, filter, update, **kwargs):
        if "$pull" in update:
            self.failed += 1
            raise PyMongoError("write concern timeout")
        return await self.collection.find_one_and_update(filter, update, **kwargs)


def break_releases(monkeypatch) -> FailingReleaseCollection:
    """Make credit releases fail until monkeypatch.setattr restores credits._balances."""
    from app.models.credit_balance import CreditBalance
    from app.services import credits as credits_service
    failing = FailingReleaseCollection(CreditBalance.get_motor_collection())
    monkeypatch.setattr(credits_service, "_balances", lambda: failing)
    return failing
