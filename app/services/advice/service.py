"""Advice computation, caching and the batch job.

The same per-market computation backs both the compute-markets job and
the on-demand endpoint. Results are cached in market_advice; the endpoint
serves a cached row while it is younger than the configured TTL.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from app.config.pipeline import AdviceConfig
from app.models import Market, MarketAdvice
from app.services.advice.model import (
    BASELINE_DRIVER,
    AdviceModel,
    AdviceResult,
    Driver,
    TopWallet,
)
from app.services.batch import BatchSummary, ItemResult, run_item
from app.services.cron_guard import CronContext, CronResult, JobStatus
from app.services.repository import SqlStore

logger = structlog.get_logger(__name__)


@dataclass
class CachedAdvice:
    """An advice row with its market, and whether it came from cache."""

    advice: MarketAdvice
    market: Market
    source: str


class AdviceService:
    """Compute and cache market advice."""

    def __init__(self, store: SqlStore, config: AdviceConfig | None = None):
        self.store = store
        self.config = config or AdviceConfig()
        self.model = AdviceModel(self.config)

    async def compute_for_market(
        self, condition_id: str, now: datetime | None = None
    ) -> AdviceResult | None:
        """Run the model for one market. None if unknown or not binary."""
        now = now or datetime.now(timezone.utc)
        quote = await self.store.load_market_quote(condition_id)
        if quote is None:
            return None
        positions = await self.store.load_market_positions(condition_id)
        flows = await self.store.load_market_flow(
            condition_id, now - timedelta(hours=self.config.window_hours)
        )
        return self.model.compute(quote, positions, flows, now)

    async def refresh(self, condition_id: str) -> MarketAdvice | None:
        """Compute and cache; the cache write records the trend."""
        advice = await self.compute_for_market(condition_id)
        if advice is None:
            return None
        return await self.store.upsert_advice(advice)

    async def get_advice(self, condition_id: str) -> CachedAdvice | None:
        """Cached advice if fresh enough, otherwise computed on demand."""
        ttl = timedelta(minutes=self.config.cache_ttl_minutes)
        cached = await self.store.get_cached_advice(condition_id, ttl)
        if cached is not None:
            advice, market = cached
            return CachedAdvice(advice=advice, market=market, source="cache")

        row = await self.refresh(condition_id)
        if row is None:
            return None
        market = await self.store.get_market(condition_id)
        logger.info("advice_computed_on_demand", condition_id=condition_id)
        return CachedAdvice(advice=row, market=market, source="computed")

    # =========================================================================
    # compute-markets job
    # =========================================================================

    async def _compute_item(self, condition_id: str) -> ItemResult:
        row = await self.refresh(condition_id)
        if row is None:
            return ItemResult.skipped(condition_id, "not_binary")
        return ItemResult.success(condition_id, count=1)

    async def run(self, ctx: CronContext) -> CronResult:
        """Recompute advice for the highest-signal open markets."""
        candidates = await self.store.list_advice_candidates(
            limit=self.config.batch_size,
            recent_days=self.config.candidate_recent_days,
            min_follow_score=self.config.candidate_min_follow_score,
        )
        batch = BatchSummary()
        status = JobStatus.SUCCESS
        summary: dict[str, Any] = {"candidates": len(candidates)}

        for condition_id in candidates:
            if ctx.over_budget():
                status = JobStatus.PARTIAL
                summary["stoppedAt"] = "markets"
                break
            batch.add(
                await run_item(
                    condition_id,
                    lambda cid=condition_id: self._compute_item(cid),
                    "advice_compute_failed",
                    request_id=ctx.request_id,
                )
            )

        summary.update(computed=batch.succeeded, skipped=batch.skipped, errors=batch.failed)
        logger.info(
            "advice_batch_completed",
            request_id=ctx.request_id,
            elapsed=round(ctx.elapsed(), 2),
            **summary,
        )

        finished = datetime.now(timezone.utc).isoformat()
        await self.store.set_state("last_compute_markets_at", finished)
        await self.store.set_state(
            "last_compute_markets_summary", json.dumps(summary, default=str)
        )
        return CronResult(summary=summary, status=status)


def advice_to_dict(advice: MarketAdvice, market: Market | None) -> dict[str, Any]:
    """
    API shape of a cached advice row joined with its market.

    Cached drivers and wallets are re-validated against their typed records.
    """
    p_model_yes = advice.p_model_yes
    p_model_no = 1 - p_model_yes
    return {
        "conditionId": advice.condition_id,
        "question": market.question if market else None,
        "slug": market.slug if market else None,
        "eventSlug": market.event_slug if market else None,
        "endDate": market.end_date if market else None,
        "closed": market.closed if market else None,
        "outcomes": (market.outcomes or []) if market else [],
        "pMktYes": advice.p_mkt_yes,
        "pModelYes": p_model_yes,
        "pModelNo": p_model_no,
        "confidence": advice.confidence,
        "pLow": advice.p_low,
        "pHigh": advice.p_high,
        "edge": advice.edge or 0.0,
        "trend": advice.trend,
        "prevPModelYes": advice.prev_p_model_yes,
        "recommendedSide": "YES" if p_model_yes >= 0.5 else "NO",
        "recommendedProb": max(p_model_yes, p_model_no),
        "posPressure": advice.pos_pressure,
        "flowPressure": advice.flow_pressure,
        "netYesShares": advice.net_yes_shares,
        "netNoShares": advice.net_no_shares,
        "flowYesCost": advice.flow_yes_cost,
        "flowNoCost": advice.flow_no_cost,
        "hedgeAgreement": advice.hedge_agreement,
        "topDrivers": [Driver.model_validate(d).model_dump() for d in advice.top_drivers or []],
        "topWallets": [
            TopWallet.model_validate(w).model_dump(mode="json") for w in advice.top_wallets or []
        ],
        "updatedAt": advice.updated_at,
    }


def main_driver(top_drivers: list[dict[str, Any]] | None) -> str:
    """Strongest non-neutral driver other than the market baseline."""
    for driver in top_drivers or []:
        if driver.get("name") != BASELINE_DRIVER and driver.get("effect") != "neutral":
            return f"{driver['name']}: {driver['effect']}"
    return ""
