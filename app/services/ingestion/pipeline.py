"""Market, resolution and trade backfill sync.

One invocation runs the stages below in order, checking the time budget
before every unit of work (one page, one market, one cursor):

    active_markets    refresh pages of currently open markets
    markets           one page of the full listing at the persisted offset
    resolutions       look up winners of closed markets lacking one; a market
                      with no winner yet is marked and rechecked later
    backfill_prepare  queue a trade cursor for each new resolution (local)
    backfill          pull one page of BUY trades per queued cursor

All progress lives in the database (markets_offset, trade_backfill rows),
so a run that stops early simply resumes on the next invocation.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from app.config.pipeline import IngestionConfig
from app.services.batch import BatchSummary, ItemOutcome, ItemResult, run_item
from app.services.cron_guard import CronContext, CronResult, JobStatus
from app.services.polymarket_client import PolymarketAPIError, PolymarketClient
from app.services.repository import BackfillItem, SqlStore, UnresolvedMarket

logger = structlog.get_logger(__name__)

MARKETS_OFFSET_KEY = "markets_offset"


class BudgetExhausted(Exception):
    """
    Raised inside a stage to stop the run.

    Carries the stage name and, when the stage got part way through, its
    counters so far.
    """

    def __init__(self, stage: str, partial: dict[str, Any] | None = None):
        super().__init__(stage)
        self.stage = stage
        self.partial = partial


# Summary key each stage reports under.
STAGE_SUMMARY_KEYS = {
    "active_markets": "activeMarkets",
    "markets": "markets",
    "resolutions": "resolutions",
    "backfill_prepare": "backfillRowsCreated",
    "backfill": "trades",
}


class IngestionPipeline:
    """
    Sync job.

    The store and client are injected; the pipeline itself holds no state
    between invocations.
    """

    def __init__(
        self,
        store: SqlStore,
        client: PolymarketClient,
        config: IngestionConfig | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config or IngestionConfig()

    @staticmethod
    def _check_budget(ctx: CronContext, stage: str) -> None:
        if ctx.over_budget():
            raise BudgetExhausted(stage)

    async def run(self, ctx: CronContext) -> CronResult:
        summary: dict[str, Any] = {}
        status = JobStatus.SUCCESS

        try:
            summary["activeMarkets"] = await self.sync_active_markets(ctx)
            summary["markets"] = await self.sync_markets(ctx)
            summary["resolutions"] = await self.sync_resolutions(ctx)
            summary["backfillRowsCreated"] = await self.prepare_backfill(ctx)
            summary["trades"] = await self.drain_backfill(ctx)
        except BudgetExhausted as stop:
            status = JobStatus.PARTIAL
            summary["stoppedAt"] = stop.stage
            if stop.partial is not None:
                summary[STAGE_SUMMARY_KEYS[stop.stage]] = stop.partial
            logger.info(
                "sync_budget_exhausted",
                request_id=ctx.request_id,
                stopped_at=stop.stage,
                elapsed=round(ctx.elapsed(), 2),
            )

        now = datetime.now(timezone.utc).isoformat()
        summary["lastSyncAt"] = now
        await self.store.set_state("last_sync_at", now)
        await self.store.set_state("last_sync_summary", json.dumps(summary, default=str))
        return CronResult(summary=summary, status=status)

    # =========================================================================
    # Stage A0: open markets
    # =========================================================================

    async def sync_active_markets(self, ctx: CronContext) -> dict[str, Any]:
        """Refresh listings (and quoted prices) of currently open markets."""
        fetched = upserted = 0
        offset = 0
        for _ in range(self.config.active_pages):
            if ctx.over_budget():
                raise BudgetExhausted(
                    "active_markets", {"fetched": fetched, "upserted": upserted}
                )
            try:
                count, markets = await self.client.fetch_markets_page(
                    limit=self.config.active_page_size, offset=offset, closed=False
                )
            except PolymarketAPIError as e:
                logger.warning("active_markets_fetch_failed", offset=offset, error=str(e))
                return {"fetched": fetched, "upserted": upserted, "error": str(e)}

            fetched += count
            upserted += await self.store.upsert_markets(markets)
            offset += count
            if count < self.config.active_page_size:
                break

        logger.info("active_markets_synced", fetched=fetched, upserted=upserted)
        return {"fetched": fetched, "upserted": upserted}

    # =========================================================================
    # Stage A: full listing at the persisted offset
    # =========================================================================

    async def sync_markets(self, ctx: CronContext) -> dict[str, Any]:
        """
        Fetch one page at markets_offset.

        The offset advances by the page size, or wraps to 0 when the page is
        empty (the scan has reached the end and starts over).
        """
        self._check_budget(ctx, "markets")
        page_size = self.config.markets_page_size
        offset = int(await self.store.get_state(MARKETS_OFFSET_KEY, "0"))

        try:
            count, markets = await self.client.fetch_markets_page(limit=page_size, offset=offset)
        except PolymarketAPIError as e:
            logger.warning("markets_fetch_failed", offset=offset, error=str(e))
            return {
                "fetched": 0,
                "upserted": 0,
                "offset": offset,
                "newOffset": offset,
                "error": str(e),
            }

        upserted = await self.store.upsert_markets(markets)
        new_offset = 0 if count == 0 else offset + page_size
        await self.store.set_state(MARKETS_OFFSET_KEY, str(new_offset))

        logger.info(
            "markets_synced",
            fetched=count,
            upserted=upserted,
            offset=offset,
            new_offset=new_offset,
        )
        return {"fetched": count, "upserted": upserted, "offset": offset, "newOffset": new_offset}

    # =========================================================================
    # Stage B: resolutions
    # =========================================================================

    async def _resolve_market(self, market: UnresolvedMarket) -> ItemResult:
        try:
            resolution = await self.client.fetch_market_winner(
                market.condition_id, market.token_ids
            )
        except PolymarketAPIError:
            await self.store.mark_resolution_pending(market.condition_id)
            raise
        if resolution is None:
            await self.store.mark_resolution_pending(market.condition_id)
            return ItemResult.skipped(market.condition_id, "no_winner")
        await self.store.upsert_resolution(resolution)
        return ItemResult.success(market.condition_id, count=1)

    async def sync_resolutions(self, ctx: CronContext) -> dict[str, Any]:
        """Look up winners of closed markets, most recently ended first."""
        self._check_budget(ctx, "resolutions")
        batch = BatchSummary()
        markets = await self.store.list_unresolved_closed_markets(
            self.config.resolutions_batch,
            recheck_after=timedelta(hours=self.config.resolution_recheck_hours),
        )

        try:
            for market in markets:
                self._check_budget(ctx, "resolutions")
                batch.add(
                    await run_item(
                        market.condition_id,
                        lambda m=market: self._resolve_market(m),
                        "resolution_failed",
                    )
                )
        except BudgetExhausted as stop:
            stop.partial = self._resolutions_summary(markets, batch)
            raise
        finally:
            logger.info("resolutions_synced", candidates=len(markets), **batch.to_dict())

        return self._resolutions_summary(markets, batch)

    @staticmethod
    def _resolutions_summary(markets: list, batch: BatchSummary) -> dict[str, Any]:
        return {"candidates": len(markets), "inserted": batch.succeeded, **batch.to_dict()}

    # =========================================================================
    # Stage C: queue backfill cursors
    # =========================================================================

    async def prepare_backfill(self, ctx: CronContext) -> int:
        self._check_budget(ctx, "backfill_prepare")
        created = await self.store.create_backfill_cursors(self.config.backfill_prepare_limit)
        logger.info("backfill_cursors_created", created=created)
        return created

    # =========================================================================
    # Stage D: drain backfill cursors
    # =========================================================================

    async def _backfill_page(self, item: BackfillItem) -> ItemResult:
        page_size = self.config.trades_page_size
        try:
            await self.store.ensure_market_placeholders([item.condition_id])
            count, trades = await self.client.fetch_trades_page(
                item.condition_id, limit=page_size, offset=item.next_offset, side="BUY"
            )
            await self.store.ensure_market_placeholders([t.condition_id for t in trades])
            inserted = await self.store.insert_trades(trades)
        except Exception as e:
            logger.warning(
                "backfill_page_failed",
                condition_id=item.condition_id,
                offset=item.next_offset,
                error=str(e),
            )
            try:
                await self.store.mark_backfill_error(
                    item.condition_id, str(e), self.config.retry_cooldown_minutes
                )
            except Exception as mark_error:
                logger.error(
                    "backfill_mark_error_failed",
                    condition_id=item.condition_id,
                    error=str(mark_error),
                )
            return ItemResult.failed(item.condition_id, str(e))

        result = ItemResult.success(item.condition_id, count=len(inserted))
        if count < page_size:
            # Short page: history exhausted. Offset stays where it was.
            await self.store.mark_backfill_progress(item.condition_id, item.next_offset, True)
            result.reason = "done"
        else:
            await self.store.mark_backfill_progress(
                item.condition_id, item.next_offset + page_size, False
            )
        return result

    async def drain_backfill(self, ctx: CronContext) -> dict[str, Any]:
        """One page per cursor; stale cursors first, cool-downs skipped."""
        self._check_budget(ctx, "backfill")
        batch = BatchSummary()
        completed = 0
        items = await self.store.pick_backfill_batch(self.config.backfill_batch)

        try:
            for item in items:
                self._check_budget(ctx, "backfill")
                result = batch.add(
                    await run_item(
                        item.condition_id,
                        lambda i=item: self._backfill_page(i),
                        "backfill_item_failed",
                    )
                )
                if result.reason == "done":
                    completed += 1
        except BudgetExhausted as stop:
            stop.partial = self._backfill_summary(batch, completed)
            raise
        finally:
            logger.info(
                "backfill_drained", cursors=len(items), completed=completed, **batch.to_dict()
            )

        return self._backfill_summary(batch, completed)

    @staticmethod
    def _backfill_summary(batch: BatchSummary, completed: int) -> dict[str, Any]:
        return {
            "marketsProcessed": batch.succeeded,
            "marketsCompleted": completed,
            "tradesInserted": batch.items_written,
            "errors": batch.failed,
        }

    # =========================================================================
    # One-shot seed
    # =========================================================================

    async def seed(
        self,
        markets_limit: int = 50,
        max_resolutions: int = 10,
        max_trade_markets: int = 5,
        trades_limit: int = 200,
    ) -> dict[str, Any]:
        """
        Populate an empty database with a little of everything.

        One page of closed markets, winners for the first few, and one page
        of BUY trades for the first few resolved ones. Upstream errors on
        individual markets are logged and skipped.
        """
        raw_count, markets = await self.client.fetch_markets_page(
            limit=markets_limit, offset=0, closed=True
        )
        upserted = await self.store.upsert_markets(markets)

        resolutions = BatchSummary()
        resolved = []
        for market in markets[:max_resolutions]:
            result = resolutions.add(
                await run_item(
                    market.condition_id,
                    lambda m=market: self._resolve_market(
                        UnresolvedMarket(m.condition_id, m.clob_token_ids)
                    ),
                    "seed_resolution_failed",
                )
            )
            if result.outcome == ItemOutcome.SUCCESS:
                resolved.append(market.condition_id)

        trades = BatchSummary()
        for condition_id in resolved[:max_trade_markets]:
            trades.add(
                await run_item(
                    condition_id,
                    lambda cid=condition_id: self._seed_trades(cid, trades_limit),
                    "seed_trades_failed",
                )
            )

        report = {
            "marketsRaw": raw_count,
            "marketsNormalized": len(markets),
            "marketsUpserted": upserted,
            "resolutionsSaved": resolutions.succeeded,
            "tradesInserted": trades.items_written,
        }
        logger.info("seed_completed", **report)
        return report

    async def _seed_trades(self, condition_id: str, limit: int) -> ItemResult:
        _, trades = await self.client.fetch_trades_page(
            condition_id, limit=limit, offset=0, side="BUY"
        )
        await self.store.ensure_market_placeholders([t.condition_id for t in trades])
        inserted = await self.store.insert_trades(trades)
        return ItemResult.success(condition_id, count=len(inserted))
