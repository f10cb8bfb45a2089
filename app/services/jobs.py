"""Job registry and runner.

The cron endpoint, the admin endpoints and the Celery tasks all go through
JobRunner.run, so every path gets the same lock, audit row and budget.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as redis
import structlog

from app.config import PipelineConfig, Settings, get_pipeline_config, get_settings
from app.models import Database
from app.services.advice.service import AdviceService
from app.services.cron_guard import CronContext, CronGuard, CronReport, CronResult
from app.services.ingestion import IngestionPipeline
from app.services.live_refresh import LiveRefreshService
from app.services.locks import LOCK_KEYS, AdvisoryLocks
from app.services.polymarket_client import PolymarketClient
from app.services.repository import SqlStore
from app.services.scoring.service import WalletStatsService

logger = structlog.get_logger(__name__)


class UnknownJobError(KeyError):
    """No job registered under that name."""


@dataclass(frozen=True)
class JobSpec:
    name: str
    lock_key: int


JOBS: dict[str, JobSpec] = {name: JobSpec(name, key) for name, key in LOCK_KEYS.items()}


def get_job(name: str) -> JobSpec:
    try:
        return JOBS[name]
    except KeyError:
        raise UnknownJobError(name) from None


class JobRunner:
    """Builds the services for a job and runs it under the cron guard."""

    def __init__(
        self,
        database: Database,
        redis_client: redis.Redis | None = None,
        settings: Settings | None = None,
        config: PipelineConfig | None = None,
        guard: CronGuard | None = None,
    ):
        self.database = database
        self.redis = redis_client
        self.settings = settings or get_settings()
        self.config = config or get_pipeline_config()
        self.store = SqlStore(database)
        self.guard = guard or CronGuard(
            AdvisoryLocks(database.engine, self.settings.advisory_lock_stale_seconds),
            self.store,
        )

    def budget_for(self, name: str) -> float:
        return {
            "sync": self.config.ingestion.time_budget_seconds,
            "compute": self.config.scoring.time_budget_seconds,
            "sync-live": self.config.live.time_budget_seconds,
            "compute-markets": self.config.advice.time_budget_seconds,
        }[name]

    @asynccontextmanager
    async def upstream(self) -> AsyncIterator[PolymarketClient]:
        async with PolymarketClient(redis_client=self.redis, settings=self.settings) as client:
            yield client

    async def _handle(self, name: str, ctx: CronContext) -> CronResult:
        if name == "compute":
            return await WalletStatsService(self.store, self.config.scoring).run(ctx)
        if name == "compute-markets":
            return await AdviceService(self.store, self.config.advice).run(ctx)

        async with self.upstream() as client:
            if name == "sync":
                return await IngestionPipeline(self.store, client, self.config.ingestion).run(ctx)
            return await LiveRefreshService(
                self.store, client, self.config.live, self.config.scoring
            ).run(ctx)

    async def run(self, name: str, request_id: str | None = None) -> CronReport:
        spec = get_job(name)
        report = await self.guard.run(
            spec.name,
            spec.lock_key,
            lambda ctx: self._handle(spec.name, ctx),
            self.budget_for(spec.name),
            request_id=request_id,
        )
        logger.info(
            "job_report",
            job=spec.name,
            request_id=report.request_id,
            status=report.status.value,
            duration_ms=report.duration_ms,
        )
        return report

    async def seed(self) -> dict:
        async with self.upstream() as client:
            return await IngestionPipeline(self.store, client, self.config.ingestion).seed()
