"""Database seed endpoint."""

import time
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends

from app.api.dependencies import get_job_runner, require_seed
from app.services.jobs import JobRunner

router = APIRouter(prefix="/api/db", tags=["db"])
logger = structlog.get_logger(__name__)


@router.post("/seed", dependencies=[Depends(require_seed)])
async def seed(runner: JobRunner = Depends(get_job_runner)) -> dict[str, Any]:
    """
    One-shot population of an empty database.

    One page of closed markets, winners for up to 10 of them and one page
    of BUY trades for up to 5 resolved markets.
    """
    request_id = str(uuid.uuid4())
    started = time.monotonic()
    try:
        report = await runner.seed()
    except Exception as e:
        logger.error("seed_failed", request_id=request_id, error=str(e))
        return {"ok": False, "requestId": request_id, "error": str(e)}

    return {
        "ok": True,
        "requestId": request_id,
        "durationMs": int((time.monotonic() - started) * 1000),
        **report,
    }
