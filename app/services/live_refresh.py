"""Live trade refresh for the wallets worth watching.

Backfill only reaches markets once they resolve. This job keeps the
position ledger current for a bounded set of target wallets by pulling
their most recent BUY and SELL trades directly, then refreshes quotes for
the outcome tokens those wallets hold.

Target wallets are the ranked merge of

    1. followable wallets, by follow score
    2. positive alpha-Z at the tightest threshold
    3. positive follow score
    4. positive alpha-Z at any threshold with a minimum sample
    5. the operator watch-list

where a wallet keeps the rank of its first appearance. Each run refreshes
the top max_wallets_per_run of that list, so the highest-priority wallets
are reconsidered first every time.
"""

import asyncio
import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import structlog

from app.config.pipeline import LiveConfig, ScoringConfig
from app.services.batch import BatchSummary, ItemOutcome, ItemResult, run_item
from app.services.cron_guard import CronContext, CronResult, JobStatus
from app.services.polymarket_client import NormalizedTrade, PolymarketClient
from app.services.positions import PositionLedger
from app.services.repository import SqlStore

logger = structlog.get_logger(__name__)

def select_wallets(ranked_lists: Iterable[Iterable[str]], max_target: int) -> list[str]:
    """
    Merge ranked candidate lists, first occurrence wins.

    Lists are consumed in priority order and each keeps its internal order.
    Stops once max_target distinct wallets are collected.
    """
    selected: list[str] = []
    seen: set[str] = set()
    for ranked in ranked_lists:
        for wallet in ranked:
            if len(selected) >= max_target:
                return selected
            if wallet and wallet not in seen:
                seen.add(wallet)
                selected.append(wallet)
    return selected


def merge_by_pk(*pages: list[NormalizedTrade]) -> list[NormalizedTrade]:
    seen: set[str] = set()
    merged = []
    for page in pages:
        for trade in page:
            if trade.pk not in seen:
                seen.add(trade.pk)
                merged.append(trade)
    return merged


class LiveRefreshService:
    """sync-live job."""

    def __init__(
        self,
        store: SqlStore,
        client: PolymarketClient,
        config: LiveConfig | None = None,
        scoring: ScoringConfig | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config or LiveConfig()
        self.scoring = scoring or ScoringConfig()
        self.ledger = PositionLedger(store)

    async def target_wallets(self) -> list[str]:
        limit = self.config.max_target_wallets
        ranked = [
            await self.store.list_followable_wallets(limit),
            await self.store.list_positive_z_wallets(self.scoring.tightest_threshold, limit),
            await self.store.list_positive_score_wallets(limit),
            await self.store.list_positive_z_any_threshold(
                self.config.min_sample_any_threshold, limit
            ),
            await self.store.list_watchlist(),
        ]
        return select_wallets(ranked, limit)

    async def refresh_wallet(self, wallet: str, counters: dict[str, int]) -> ItemResult:
        """Pull one page of each side, insert what is new, update ledger and cursor."""
        page_size = self.config.trades_page_size
        cursor = await self.store.get_live_cursor(wallet)

        (_, buys), (_, sells) = await asyncio.gather(
            self.client.fetch_user_trades_page(wallet, limit=page_size, offset=0, side="BUY"),
            self.client.fetch_user_trades_page(wallet, limit=page_size, offset=0, side="SELL"),
        )
        trades = merge_by_pk(buys, sells)
        if cursor is not None:
            trades = [t for t in trades if t.ts > cursor]
        if not trades:
            return ItemResult.skipped(wallet, "no_new_trades")

        try:
            await self.store.ensure_market_placeholders([t.condition_id for t in trades])
        except Exception as e:
            logger.warning("live_placeholders_failed", wallet=wallet, error=str(e))

        inserted = await self.store.insert_trades(trades)
        counters["positionsUpdated"] += await self.ledger.apply_inserted_trades(inserted)

        await self.store.advance_live_cursor(wallet, max(t.ts for t in trades))
        counters["cursorsUpdated"] += 1
        return ItemResult.success(wallet, count=len(inserted))

    async def refresh_prices(self, ctx: CronContext, wallets: list[str]) -> tuple[int, bool]:
        """Quote the tokens the wallets hold. Returns (fetched, stopped_early)."""
        token_ids = await self.store.held_token_ids(wallets, self.config.max_price_tokens)
        fetched = 0
        for token_id in token_ids:
            if ctx.over_budget():
                return fetched, True
            try:
                price = await self.client.fetch_token_price(token_id)
            except Exception as e:
                logger.debug("token_price_failed", token_id=token_id, error=str(e))
                continue
            if price is not None:
                await self.store.upsert_token_price(token_id, price)
                fetched += 1
        return fetched, False

    async def run(self, ctx: CronContext) -> CronResult:
        status = JobStatus.SUCCESS
        targets = await self.target_wallets()
        batch_wallets = targets[: self.config.max_wallets_per_run]

        batch = BatchSummary()
        counters = {"positionsUpdated": 0, "cursorsUpdated": 0}
        processed: list[str] = []

        for wallet in batch_wallets:
            if ctx.over_budget():
                status = JobStatus.PARTIAL
                break
            result = batch.add(
                await run_item(
                    wallet,
                    lambda w=wallet: self.refresh_wallet(w, counters),
                    "live_wallet_failed",
                    request_id=ctx.request_id,
                )
            )
            if result.outcome != ItemOutcome.FAILED:
                processed.append(wallet)

        prices_fetched = 0
        if processed and not ctx.over_budget():
            prices_fetched, stopped = await self.refresh_prices(ctx, processed)
            if stopped:
                status = JobStatus.PARTIAL

        summary: dict[str, Any] = {
            "walletsTargeted": len(targets),
            "walletsProcessed": batch.attempted,
            "tradesInserted": batch.items_written,
            "positionsUpdated": counters["positionsUpdated"],
            "pricesFetched": prices_fetched,
            "cursorsUpdated": counters["cursorsUpdated"],
            "errors": batch.failed,
        }
        logger.info("live_refresh_completed", request_id=ctx.request_id, **summary)

        finished = datetime.now(timezone.utc).isoformat()
        await self.store.set_state("last_live_sync_at", finished)
        await self.store.set_state("last_live_sync_summary", json.dumps(summary))
        return CronResult(summary=summary, status=status)
