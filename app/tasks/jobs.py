"""Scheduled job tasks.

Each task runs one registered job to completion in a fresh event loop with
its own storage handle. Lock contention is a normal outcome (another worker
or the HTTP cron endpoint is already running the job) and is not retried.
"""

import asyncio

import redis.asyncio as redis
import structlog

from app.config import get_settings
from app.models import task_database
from app.services.jobs import JobRunner
from app.tasks import celery_app

logger = structlog.get_logger(__name__)


def run_job_sync(job: str, request_id: str | None = None) -> dict:
    """Run a job from synchronous (worker) code."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_run_job_async(job, request_id))
    finally:
        loop.close()


async def _run_job_async(job: str, request_id: str | None) -> dict:
    """Async implementation shared by all job tasks."""
    settings = get_settings()
    redis_client = redis.from_url(settings.redis_url)
    try:
        async with task_database() as database:
            report = await JobRunner(database, redis_client, settings).run(job, request_id)
    finally:
        await redis_client.aclose()

    if not report.ok:
        logger.error("job_task_failed", job=job, request_id=report.request_id, error=report.error)
    return report.to_dict()


@celery_app.task(bind=True, soft_time_limit=60, time_limit=90, queue="jobs")
def sync_task(self, request_id: str | None = None):
    """
    Scheduled: Every 5 minutes

    Markets page, resolutions, backfill cursor creation and one page of
    trades per pending cursor, within a 25 second budget.
    """
    return run_job_sync("sync", request_id or self.request.id)


@celery_app.task(bind=True, soft_time_limit=60, time_limit=90, queue="jobs")
def sync_live_task(self, request_id: str | None = None):
    """
    Scheduled: Every 2 minutes

    Recent trades of up to 10 target wallets, then token quotes.
    """
    return run_job_sync("sync-live", request_id or self.request.id)


@celery_app.task(bind=True, soft_time_limit=90, time_limit=120, queue="jobs")
def compute_task(self, request_id: str | None = None):
    """
    Scheduled: Every hour at :15

    Rebuild wallet_stats and wallet_profiles.
    """
    return run_job_sync("compute", request_id or self.request.id)


@celery_app.task(bind=True, soft_time_limit=90, time_limit=120, queue="jobs")
def compute_markets_task(self, request_id: str | None = None):
    """
    Scheduled: Every 10 minutes

    Recompute cached advice for the strongest-signal open markets.
    """
    return run_job_sync("compute-markets", request_id or self.request.id)


# Registered job name -> task
JOB_TASKS = {
    "sync": sync_task,
    "sync-live": sync_live_task,
    "compute": compute_task,
    "compute-markets": compute_markets_task,
}
