"""Health check endpoints."""

from datetime import datetime, timezone

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text

from app.api.dependencies import get_database, get_redis, get_store
from app.config import get_settings
from app.models import Database
from app.services.repository import SqlStore

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime


class ReadyCheck(BaseModel):
    """Individual readiness check."""

    status: str
    message: str | None = None


class ReadyResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    checks: dict[str, ReadyCheck]


@router.get("/health", response_model=HealthResponse)
async def health():
    """
    Basic health check.

    Returns healthy if the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/ready", response_model=ReadyResponse)
async def ready(
    database: Database = Depends(get_database),
    redis_client: redis.Redis = Depends(get_redis),
    store: SqlStore = Depends(get_store),
):
    """
    Readiness check for all dependencies.

    Checks:
    - Database connectivity
    - Redis connectivity
    - Scheduler secret configured
    - Time of the last completed sync (informational)
    """
    checks = {}
    all_ready = True

    # Check database
    try:
        async with database.session() as session:
            await session.execute(text("SELECT 1"))
        checks["db"] = ReadyCheck(status="ok")
    except Exception as e:
        checks["db"] = ReadyCheck(status="error", message=str(e))
        all_ready = False

    # Check Redis
    try:
        await redis_client.ping()
        checks["redis"] = ReadyCheck(status="ok")
    except Exception as e:
        checks["redis"] = ReadyCheck(status="error", message=str(e))
        all_ready = False

    # Check scheduler secret
    if get_settings().cron_configured:
        checks["cron"] = ReadyCheck(status="ok", message="CRON_SECRET configured")
    else:
        checks["cron"] = ReadyCheck(
            status="warning",
            message="CRON_SECRET not configured, cron endpoints reject all calls",
        )
        # Don't mark as not ready, just warn

    # Last sync checkpoint
    if checks["db"].status == "ok":
        last_sync = await store.get_state("last_sync_at", "")
        checks["sync"] = ReadyCheck(
            status="ok" if last_sync else "warning",
            message=f"last sync at {last_sync}" if last_sync else "sync has never run",
        )

    return ReadyResponse(ready=all_ready, checks=checks)
