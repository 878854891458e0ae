"""Periodic recovery jobs run by the ARQ worker."""

import pytest
from pymongo.errors import PyMongoError

from app.services import credits as credits_service
from app.worker import tasks
from app.worker.run_worker import WorkerSettings

from helpers import break_releases, checkout_event, credits_metadata, sign_payload

pytestmark = pytest.mark.asyncio


async def test_cron_schedules_both_recovery_jobs():
    scheduled = {job.coroutine for job in WorkerSettings.cron_jobs}
    assert scheduled == {tasks.recover_reservations, tasks.retry_pending_payment_events}


async def test_retry_job_grants_pending_purchase(user, monkeypatch):
    from app.services import payments as payments_service
    real_grant = credits_service.grant

    async def broken_grant(*args, **kwargs):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(credits_service, "grant", broken_grant)
    payload = checkout_event("evt_cron", credits_metadata(user.id, 30))
    assert (await payments_service.handle_webhook(payload, sign_payload(payload)))["status"] == "pending"

    monkeypatch.setattr(credits_service, "grant", real_grant)
    assert await tasks.retry_pending_payment_events({"job_id": "cron:retry"}) == 1
    assert await credits_service.get_balance(user.id) == 30
    assert await tasks.retry_pending_payment_events({}) == 0
    assert await credits_service.get_balance(user.id) == 30


async def test_recover_job_returns_unreleased_credits(user, monkeypatch):
    await credits_service.grant(user.id, 6, "seed")
    r = await credits_service.reserve(user.id, 6)
    real_balances = credits_service._balances
    break_releases(monkeypatch)
    with pytest.raises(PyMongoError):
        await credits_service.settle(r, 1)

    monkeypatch.setattr(credits_service, "_balances", real_balances)
    assert await tasks.recover_reservations({}) == 1
    assert await credits_service.get_balance(user.id) == 5


async def test_job_failure_is_reraised(db, monkeypatch):
    async def broken_sweep():
        raise PyMongoError("no primary")

    monkeypatch.setattr(tasks, "settle_stale_reservations", broken_sweep)
    with pytest.raises(PyMongoError):
        await tasks.recover_reservations({})
