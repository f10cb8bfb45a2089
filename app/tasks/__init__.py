"""Celery tasks for Sharpline.

This module configures Celery and registers the periodic jobs. Each task is
a thin wrapper around JobRunner, so beat-triggered runs take the same
advisory lock and write the same audit rows as the HTTP cron endpoint.
"""

from celery import Celery
from celery.schedules import crontab

from app.config import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "sharpline",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks.jobs"],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=120,  # jobs stop themselves well before this
    task_soft_time_limit=90,
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Markets, resolutions, trade backfill - every 5 minutes
    "sync": {
        "task": "app.tasks.jobs.sync_task",
        "schedule": 300.0,
        "options": {"expires": 280},
    },
    # Live wallet trades and token quotes - every 2 minutes
    "sync-live": {
        "task": "app.tasks.jobs.sync_live_task",
        "schedule": 120.0,
        "options": {"expires": 110},
    },
    # Wallet statistics and profiles - every hour at :15
    "compute": {
        "task": "app.tasks.jobs.compute_task",
        "schedule": crontab(minute=15),
        "options": {"expires": 3540},
    },
    # Market advice - every 10 minutes
    "compute-markets": {
        "task": "app.tasks.jobs.compute_markets_task",
        "schedule": 600.0,
        "options": {"expires": 580},
    },
}
