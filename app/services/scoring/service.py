"""Wallet statistics job.

Recomputes wallet_stats and wallet_profiles from scratch on every run:

    1. load cheap BUYs on resolved markets, aggregate per (wallet, threshold)
    2. synthesise one profile per wallet from the aggregates

Both tables are replaced wholesale, each in its own transaction.
"""

import json
from datetime import datetime, timezone
from typing import Any

import structlog

from app.config.pipeline import ScoringConfig
from app.services.cron_guard import CronContext, CronResult, JobStatus
from app.services.repository import SqlStore
from app.services.scoring.engine import WalletScoringEngine

logger = structlog.get_logger(__name__)


class WalletStatsService:
    """Compute job. Local only, no upstream calls."""

    def __init__(self, store: SqlStore, config: ScoringConfig | None = None):
        self.store = store
        self.config = config or ScoringConfig()
        self.engine = WalletScoringEngine(self.config)

    async def run(self, ctx: CronContext) -> CronResult:
        now = datetime.now(timezone.utc)
        summary: dict[str, Any] = {}
        status = JobStatus.SUCCESS

        buys = await self.store.load_cheap_buys(self.config.widest_threshold)
        stats = self.engine.compute_stats(buys)
        summary["cheapBuys"] = len(buys)
        summary["walletStatsRows"] = await self.store.replace_wallet_stats(stats)
        summary["wallets"] = len({s.wallet for s in stats})
        logger.info("wallet_stats_computed", buys=len(buys), rows=len(stats))

        if ctx.over_budget():
            status = JobStatus.PARTIAL
            summary["stoppedAt"] = "wallet_stats"
            logger.info("compute_budget_exhausted", request_id=ctx.request_id)
        else:
            wallets = sorted({b.wallet for b in buys})
            last_buy_at = await self.store.latest_buy_by_wallet(wallets)
            profiles = self.engine.compute_profiles(buys, stats, last_buy_at, now)
            summary["profiles"] = await self.store.replace_wallet_profiles(profiles)
            summary["followable"] = sum(1 for p in profiles if p.is_followable)
            summary["significant"] = sum(
                1
                for s in stats
                if s.threshold == self.config.profile_threshold and s.is_significant
            )
            logger.info(
                "wallet_profiles_computed",
                profiles=len(profiles),
                followable=summary["followable"],
            )

        finished = datetime.now(timezone.utc).isoformat()
        summary["lastComputeAt"] = finished
        await self.store.set_state("last_compute_at", finished)
        await self.store.set_state("last_compute_summary", json.dumps(summary, default=str))
        return CronResult(summary=summary, status=status)
