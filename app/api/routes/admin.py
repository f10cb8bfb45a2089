"""Admin API endpoints.

Operator-only job triggers, checkpoint resets, status and the wallet
watch-list. Every endpoint requires the ADMIN_SECRET bearer token.
"""

import re
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator

from app.api.dependencies import get_job_runner, get_store, require_admin
from app.services.ingestion.pipeline import MARKETS_OFFSET_KEY
from app.services.jobs import JOBS, JobRunner
from app.services.repository import SqlStore

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = structlog.get_logger(__name__)

WALLET_RE = re.compile(r"^0x[a-f0-9]{40}$")


class TaskTriggerResponse(BaseModel):
    """Response from task trigger."""
    ok: bool
    request_id: str
    job: str
    task_id: str
    status: str
    message: str


class WatchlistEntry(BaseModel):
    """Watch-list add request."""
    wallet: str
    note: str | None = None

    @field_validator("wallet")
    @classmethod
    def validate_wallet(cls, value: str) -> str:
        wallet = value.strip().lower()
        if not WALLET_RE.match(wallet):
            raise ValueError("wallet must be 0x followed by 40 hex characters")
        return wallet


def _check_job(job: str) -> None:
    if job not in JOBS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown job: {job}. Available: {list(JOBS)}",
        )


@router.post("/run/{job}")
async def run_job(job: str, runner: JobRunner = Depends(get_job_runner)) -> dict[str, Any]:
    """Run a job inline, exactly as the scheduler would."""
    _check_job(job)
    report = await runner.run(job)
    logger.info("job_run_manually", job=job, request_id=report.request_id)
    return report.to_dict()


@router.post("/trigger-task/{job}", response_model=TaskTriggerResponse)
async def trigger_task(job: str) -> TaskTriggerResponse:
    """Enqueue a job on the Celery workers and return immediately."""
    _check_job(job)
    request_id = str(uuid.uuid4())

    try:
        from app.tasks.jobs import JOB_TASKS

        result = JOB_TASKS[job].apply_async(kwargs={"request_id": request_id})
    except Exception as e:
        logger.error("task_trigger_failed", job=job, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to trigger task: {str(e)}")

    logger.info("task_triggered_manually", job=job, task_id=result.id, request_id=request_id)
    return TaskTriggerResponse(
        ok=True,
        request_id=request_id,
        job=job,
        task_id=result.id,
        status="submitted",
        message=f"Job {job} submitted. Check the run log for progress.",
    )


@router.post("/reset-market-offset")
async def reset_market_offset(store: SqlStore = Depends(get_store)) -> dict[str, Any]:
    """Restart the full market scan from the beginning."""
    await store.set_state(MARKETS_OFFSET_KEY, "0")
    logger.info("markets_offset_reset")
    return {
        "ok": True,
        "requestId": str(uuid.uuid4()),
        "message": f"{MARKETS_OFFSET_KEY} reset to 0",
    }


@router.get("/status")
async def status(store: SqlStore = Depends(get_store)) -> dict[str, Any]:
    """Table counts, backfill backlog, checkpoints and recent job runs."""
    counts = await store.status_counts()
    states = await store.get_states("last_")
    runs = await store.recent_runs(20)
    return {
        "ok": True,
        "requestId": str(uuid.uuid4()),
        **counts,
        "etl": {
            "marketsOffset": await store.get_state(MARKETS_OFFSET_KEY, "0"),
            **{key: value for key, value in states.items() if key.endswith("_at")},
        },
        "recentRuns": [
            {
                "id": run.id,
                "job": run.job,
                "requestId": run.request_id,
                "status": run.status,
                "startedAt": run.started_at,
                "finishedAt": run.finished_at,
                "summary": run.summary,
                "error": (run.error or "")[:300] or None,
            }
            for run in runs
        ],
    }


@router.get("/watchlist")
async def list_watchlist(store: SqlStore = Depends(get_store)) -> dict[str, Any]:
    wallets = await store.list_watchlist()
    return {"ok": True, "count": len(wallets), "wallets": wallets}


@router.post("/watchlist")
async def add_watchlist(entry: WatchlistEntry, store: SqlStore = Depends(get_store)) -> dict[str, Any]:
    added = await store.add_to_watchlist(entry.wallet, entry.note)
    logger.info("watchlist_added", wallet=entry.wallet, new=added)
    return {"ok": True, "wallet": entry.wallet, "added": added}


@router.delete("/watchlist/{wallet}")
async def remove_watchlist(wallet: str, store: SqlStore = Depends(get_store)) -> dict[str, Any]:
    wallet = wallet.strip().lower()
    if not WALLET_RE.match(wallet):
        raise HTTPException(status_code=400, detail="Invalid wallet address")
    removed = await store.remove_from_watchlist(wallet)
    if not removed:
        raise HTTPException(status_code=404, detail="Wallet not on watch-list")
    logger.info("watchlist_removed", wallet=wallet)
    return {"ok": True, "wallet": wallet, "removed": True}
