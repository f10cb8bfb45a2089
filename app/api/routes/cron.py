"""Scheduler-invoked job endpoints.

    GET /api/cron/{job}    job in sync | compute | sync-live | compute-markets

Always HTTP 200 with the job report once authorized; failures are reported
as `ok: false` with an error string.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from app.api.dependencies import get_job_runner, require_cron
from app.services.jobs import JOBS, JobRunner

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.get("/{job}", dependencies=[Depends(require_cron)])
async def run_cron_job(job: str, runner: JobRunner = Depends(get_job_runner)) -> dict[str, Any]:
    """Run a registered job under its advisory lock."""
    if job not in JOBS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown job: {job}. Available: {list(JOBS)}",
        )
    report = await runner.run(job)
    return report.to_dict()
