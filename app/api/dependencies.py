"""FastAPI dependencies for Sharpline."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Depends, Header, Request

from app.config import get_pipeline_config, get_settings
from app.models import Database
from app.services.advice.service import AdviceService
from app.services.cron_guard import CronGuard
from app.services.jobs import JobRunner
from app.services.repository import SqlStore


def get_database(request: Request) -> Database:
    """Storage handle created by the application lifespan."""
    return request.app.state.database


def get_store(database: Database = Depends(get_database)) -> SqlStore:
    """Repository over the request's storage handle."""
    return SqlStore(database)


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()


def get_job_runner(
    database: Database = Depends(get_database),
    redis_client: redis.Redis = Depends(get_redis),
) -> JobRunner:
    """Job runner sharing the application's storage handle."""
    return JobRunner(database, redis_client)


def get_advice_service(store: SqlStore = Depends(get_store)) -> AdviceService:
    return AdviceService(store, get_pipeline_config().advice)


def require_cron(authorization: str | None = Header(default=None)) -> None:
    """Scheduler endpoints: CRON_SECRET bearer token."""
    CronGuard.authorize(authorization, get_settings().cron_secret)


def require_admin(authorization: str | None = Header(default=None)) -> None:
    """Operator endpoints: ADMIN_SECRET bearer token."""
    CronGuard.authorize(authorization, get_settings().admin_secret)


def require_seed(authorization: str | None = Header(default=None)) -> None:
    """Seed endpoint: SEED_SECRET or ADMIN_SECRET bearer token."""
    settings = get_settings()
    CronGuard.authorize(authorization, settings.seed_secret, settings.admin_secret)
