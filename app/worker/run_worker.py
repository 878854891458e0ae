"""Run ARQ worker. Usage: python -m app.worker.run_worker (or: arq app.worker.run_worker.WorkerSettings)"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import (
    get_redis_settings,
    recover_reservations,
    retry_pending_payment_events,
    shutdown,
    startup,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [recover_reservations, retry_pending_payment_events]
    cron_jobs = [
        cron(retry_pending_payment_events, second=0, run_at_startup=True),  # every minute at :00
        cron(recover_reservations, minute=set(range(0, 60, 5)), second=30, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
