"""ARQ job definitions: periodic credit recovery."""

from typing import Any, Awaitable

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.services.credits import settle_stale_reservations
from app.services.payments import reprocess_pending_events

log = get_logger(__name__)


async def _run_job(job_name: str, ctx: dict[str, Any], coro: Awaitable[int]) -> int:
    """Run one job body; log the outcome and re-raise failures so ARQ records them."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    try:
        handled = await coro
    except Exception as e:
        log.exception("job_failed", job=job_name, job_id=job_id, reason=str(e))
        raise
    if handled:
        log.info("job_done", job=job_name, job_id=job_id, handled=handled)
    return handled


# Cron: every 5 minutes
async def recover_reservations(ctx: dict[str, Any]) -> int:
    """Settle reservations left open by crashed batches and release credits whose refund failed."""
    return await _run_job("recover_reservations", ctx, settle_stale_reservations())


# Cron: every minute
async def retry_pending_payment_events(ctx: dict[str, Any]) -> int:
    """Apply paid credit events that were acknowledged as pending."""
    return await _run_job("retry_pending_payment_events", ctx, reprocess_pending_events())


async def startup(ctx: dict) -> None:
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(get_settings().redis_url)
