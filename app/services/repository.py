"""PostgreSQL persistence for the pipeline.

SqlStore wraps an injected Database handle. Every public method runs in its
own short transaction, so work committed before a budget stop or a failed
item stays committed. All writes are INSERT ... ON CONFLICT upserts.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import (
    Integer,
    String,
    and_,
    cast,
    delete,
    exists,
    func,
    literal,
    nulls_first,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert

from app.models import (
    Database,
    EtlRun,
    EtlState,
    Market,
    MarketAdvice,
    OutcomePair,
    Resolution,
    TokenPrice,
    Trade,
    TradeBackfill,
    WalletLiveCursor,
    WalletPosition,
    WalletProfile,
    WalletStats,
    WalletWatchlist,
)
from app.services.advice.model import AdviceResult, FlowInput, MarketQuote, PositionInput
from app.services.polymarket_client.normalize import (
    NormalizedMarket,
    NormalizedResolution,
    NormalizedTrade,
)
from app.services.scoring.engine import CheapBuy, WalletProfileResult, WalletStatsResult

logger = structlog.get_logger(__name__)

NEAR_ZERO = 1e-9
INSERT_CHUNK = 500


@dataclass
class UnresolvedMarket:
    condition_id: str
    token_ids: OutcomePair | None


@dataclass
class BackfillItem:
    condition_id: str
    next_offset: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(rows: list[Any], size: int = INSERT_CHUNK):
    for i in range(0, len(rows), size):
        yield rows[i : i + size]


def advice_upsert(advice: AdviceResult):
    """
    INSERT ... ON CONFLICT statement caching one market's advice.

    The first write leaves prev_p_model_yes and trend NULL. Later writes move
    the stored p_model_yes into prev_p_model_yes and set trend to new minus
    previous.
    """
    values = {
        "condition_id": advice.condition_id,
        "p_mkt_yes": advice.p_mkt_yes,
        "p_model_yes": advice.p_model_yes,
        "p_low": advice.p_low,
        "p_high": advice.p_high,
        "confidence": advice.confidence,
        "edge": advice.edge,
        "recommended_side": advice.recommended_side,
        "recommended_prob": advice.recommended_prob,
        "pos_pressure": advice.pos_pressure,
        "flow_pressure": advice.flow_pressure,
        "net_yes_shares": advice.net_yes_shares,
        "net_no_shares": advice.net_no_shares,
        "flow_yes_cost": advice.flow_yes_cost,
        "flow_no_cost": advice.flow_no_cost,
        "hedge_agreement": advice.hedge_agreement,
        "top_drivers": [d.model_dump() for d in advice.top_drivers],
        "top_wallets": [w.model_dump(mode="json") for w in advice.top_wallets],
        "prev_p_model_yes": None,
        "trend": None,
        "updated_at": func.now(),
    }
    stmt = insert(MarketAdvice).values(**values)
    updates = {
        k: getattr(stmt.excluded, k)
        for k in values
        if k not in ("condition_id", "prev_p_model_yes", "trend", "updated_at")
    }
    updates.update(
        prev_p_model_yes=MarketAdvice.p_model_yes,
        trend=stmt.excluded.p_model_yes - MarketAdvice.p_model_yes,
        updated_at=func.now(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[MarketAdvice.condition_id], set_=updates
    ).returning(MarketAdvice)
    return stmt


class SqlStore:
    """Repository over the pipeline tables."""

    def __init__(self, database: Database):
        self.db = database

    # =========================================================================
    # Checkpoint store
    # =========================================================================

    async def get_state(self, key: str, default: str) -> str:
        async with self.db.session() as session:
            value = await session.scalar(select(EtlState.value).where(EtlState.key == key))
        return default if value is None else value

    async def set_state(self, key: str, value: str) -> None:
        stmt = insert(EtlState).values(key=key, value=value, updated_at=func.now())
        stmt = stmt.on_conflict_do_update(
            index_elements=[EtlState.key],
            set_={"value": stmt.excluded.value, "updated_at": func.now()},
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    async def get_states(self, prefix: str = "") -> dict[str, str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(EtlState.key, EtlState.value).where(EtlState.key.startswith(prefix))
            )
            return {row.key: row.value for row in result}

    # =========================================================================
    # Markets and resolutions
    # =========================================================================

    async def upsert_markets(self, markets: list[NormalizedMarket]) -> int:
        """Full replace of mutable fields, keeping known event slug and title."""
        if not markets:
            return 0
        # One row per condition id; Postgres rejects duplicate keys in one statement.
        unique = {m.condition_id: m for m in markets}
        rows = [
            {
                "condition_id": m.condition_id,
                "question": m.question,
                "slug": m.slug,
                "event_slug": m.event_slug,
                "group_item_title": m.group_item_title,
                "end_date": m.end_date,
                "closed": m.closed,
                "outcomes": m.outcomes.to_list(),
                "clob_token_ids": m.clob_token_ids.to_list(),
                "outcome_prices": m.outcome_prices,
            }
            for m in unique.values()
        ]
        written = 0
        async with self.db.session() as session:
            for chunk in _chunks(rows):
                stmt = insert(Market).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Market.condition_id],
                    set_={
                        "question": stmt.excluded.question,
                        "slug": stmt.excluded.slug,
                        "event_slug": func.coalesce(stmt.excluded.event_slug, Market.event_slug),
                        "group_item_title": func.coalesce(
                            stmt.excluded.group_item_title, Market.group_item_title
                        ),
                        "end_date": stmt.excluded.end_date,
                        "closed": stmt.excluded.closed,
                        "outcomes": stmt.excluded.outcomes,
                        "clob_token_ids": stmt.excluded.clob_token_ids,
                        "outcome_prices": func.coalesce(
                            stmt.excluded.outcome_prices, Market.outcome_prices
                        ),
                        "updated_at": func.now(),
                    },
                )
                result = await session.execute(stmt)
                written += result.rowcount or 0
        return written

    async def ensure_market_placeholders(self, condition_ids: list[str]) -> int:
        """Insert bare market rows so trades can reference unseen markets."""
        ids = sorted({cid for cid in condition_ids if cid})
        if not ids:
            return 0
        stmt = insert(Market).values(
            [{"condition_id": cid, "closed": False} for cid in ids]
        ).on_conflict_do_nothing(index_elements=[Market.condition_id])
        async with self.db.session() as session:
            result = await session.execute(stmt)
        return result.rowcount or 0

    async def list_unresolved_closed_markets(
        self, limit: int, recheck_after: timedelta = timedelta(hours=6)
    ) -> list[UnresolvedMarket]:
        """
        Closed markets still waiting for a winner.

        Markets never checked come first, then markets whose earlier check
        found no winner and is older than recheck_after. Within each group
        the most recently ended market comes first.
        """
        cutoff = _utcnow() - recheck_after
        query = (
            select(Market.condition_id, Market.clob_token_ids)
            .outerjoin(Resolution, Resolution.condition_id == Market.condition_id)
            .where(Market.closed.is_(True))
            .where(
                or_(
                    Resolution.condition_id.is_(None),
                    and_(
                        Resolution.winning_token_id.is_(None),
                        Resolution.resolved_at < cutoff,
                    ),
                )
            )
            .order_by(
                Resolution.condition_id.is_not(None),
                Market.end_date.desc().nulls_last(),
            )
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            markets = []
            for row in result:
                try:
                    token_ids = OutcomePair.parse(row.clob_token_ids)
                except ValueError:
                    token_ids = None
                markets.append(UnresolvedMarket(row.condition_id, token_ids))
            return markets

    async def upsert_resolution(self, resolution: NormalizedResolution) -> None:
        stmt = insert(Resolution).values(
            condition_id=resolution.condition_id,
            winning_token_id=resolution.winning_token_id,
            winning_outcome_index=resolution.winning_outcome_index,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Resolution.condition_id],
            set_={
                "winning_token_id": stmt.excluded.winning_token_id,
                "winning_outcome_index": stmt.excluded.winning_outcome_index,
                "resolved_at": func.now(),
            },
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    async def mark_resolution_pending(self, condition_id: str) -> None:
        """
        Record that a closed market was checked and has no winner yet.

        The row carries a NULL winner and resolved_at as the check time, so the
        market drops behind unchecked ones until its recheck is due. A known
        winner is never overwritten.
        """
        stmt = insert(Resolution).values(condition_id=condition_id)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Resolution.condition_id],
            set_={"resolved_at": func.now()},
            where=Resolution.winning_token_id.is_(None),
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    async def get_market(self, condition_id: str) -> Market | None:
        async with self.db.session() as session:
            return await session.get(Market, condition_id)

    # =========================================================================
    # Trades
    # =========================================================================

    async def insert_trades(self, trades: list[NormalizedTrade]) -> list[NormalizedTrade]:
        """
        Insert trades, ignoring ones already stored.

        Returns exactly the trades that were newly inserted.
        """
        if not trades:
            return []
        unique = {t.pk: t for t in trades}
        rows = [
            {
                "pk": t.pk,
                "ts": t.ts,
                "wallet": t.wallet,
                "condition_id": t.condition_id,
                "side": t.side,
                "price": t.price,
                "size": t.size,
                "outcome": t.outcome,
                "outcome_index": t.outcome_index,
                "asset": t.asset,
                "tx_hash": t.tx_hash,
            }
            for t in unique.values()
        ]
        inserted_pks: set[str] = set()
        async with self.db.session() as session:
            for chunk in _chunks(rows):
                stmt = (
                    insert(Trade)
                    .values(chunk)
                    .on_conflict_do_nothing(index_elements=[Trade.pk])
                    .returning(Trade.pk)
                )
                result = await session.execute(stmt)
                inserted_pks.update(result.scalars().all())
        return [t for t in unique.values() if t.pk in inserted_pks]

    # =========================================================================
    # Trade backfill cursors
    # =========================================================================

    async def create_backfill_cursors(self, limit: int) -> int:
        """Queue resolved markets that have no cursor yet. Local only."""
        missing = (
            select(Resolution.condition_id, literal(0), literal(False))
            .where(Resolution.winning_token_id.is_not(None))
            .where(~exists().where(TradeBackfill.condition_id == Resolution.condition_id))
            .limit(limit)
        )
        stmt = (
            insert(TradeBackfill)
            .from_select(["condition_id", "next_offset", "done"], missing)
            .on_conflict_do_nothing(index_elements=[TradeBackfill.condition_id])
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
        return result.rowcount or 0

    async def pick_backfill_batch(self, limit: int) -> list[BackfillItem]:
        """Pending cursors outside retry cool-down, least recently touched first."""
        query = (
            select(TradeBackfill.condition_id, TradeBackfill.next_offset)
            .where(TradeBackfill.done.is_(False))
            .where(
                or_(
                    TradeBackfill.next_retry_at.is_(None),
                    TradeBackfill.next_retry_at <= func.now(),
                )
            )
            .order_by(nulls_first(TradeBackfill.updated_at.asc()), TradeBackfill.condition_id)
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return [BackfillItem(r.condition_id, r.next_offset) for r in result]

    async def mark_backfill_progress(self, condition_id: str, next_offset: int, done: bool) -> None:
        """Record a successful page; clears any failure state."""
        stmt = (
            update(TradeBackfill)
            .where(TradeBackfill.condition_id == condition_id)
            .values(
                next_offset=next_offset,
                done=done,
                fail_count=0,
                last_error=None,
                next_retry_at=None,
                updated_at=func.now(),
            )
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    async def mark_backfill_error(
        self, condition_id: str, error: str, cooldown_minutes: int = 30
    ) -> None:
        """Linear cool-down: next_retry_at = now + cooldown x (previous fail_count + 1)."""
        stmt = (
            update(TradeBackfill)
            .where(TradeBackfill.condition_id == condition_id)
            .values(
                fail_count=TradeBackfill.fail_count + 1,
                last_error=error[:1000],
                next_retry_at=func.now()
                + func.make_interval(
                    0, 0, 0, 0, 0, (TradeBackfill.fail_count + 1) * int(cooldown_minutes)
                ),
                updated_at=func.now(),
            )
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    # =========================================================================
    # Position ledger
    # =========================================================================

    async def add_position_deltas(self, trades: list[NormalizedTrade]) -> int:
        """
        Accumulate signed share deltas, one atomic upsert per trade.

        Trades without an outcome index are ignored.
        """
        updated = 0
        async with self.db.session() as session:
            for t in trades:
                if t.outcome_index is None:
                    continue
                stmt = insert(WalletPosition).values(
                    wallet=t.wallet,
                    condition_id=t.condition_id,
                    outcome_index=t.outcome_index,
                    net_shares=t.signed_size,
                    last_trade_at=t.ts,
                    updated_at=func.now(),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[
                        WalletPosition.wallet,
                        WalletPosition.condition_id,
                        WalletPosition.outcome_index,
                    ],
                    set_={
                        "net_shares": WalletPosition.net_shares + stmt.excluded.net_shares,
                        "last_trade_at": func.greatest(
                            WalletPosition.last_trade_at, stmt.excluded.last_trade_at
                        ),
                        "updated_at": func.now(),
                    },
                )
                result = await session.execute(stmt)
                updated += result.rowcount or 0
        return updated

    async def clamp_near_zero_positions(self, tolerance: float = NEAR_ZERO) -> int:
        stmt = (
            update(WalletPosition)
            .where(func.abs(WalletPosition.net_shares) < tolerance)
            .where(WalletPosition.net_shares != 0)
            .values(net_shares=0)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
        return result.rowcount or 0

    # =========================================================================
    # Live refresh
    # =========================================================================

    async def _wallets(self, query) -> list[str]:
        async with self.db.session() as session:
            result = await session.execute(query)
            return [row[0] for row in result]

    async def list_followable_wallets(self, limit: int) -> list[str]:
        return await self._wallets(
            select(WalletProfile.wallet)
            .where(WalletProfile.is_followable.is_(True))
            .order_by(WalletProfile.follow_score.desc(), WalletProfile.wallet)
            .limit(limit)
        )

    async def list_positive_z_wallets(self, threshold: float, limit: int, min_n: int = 0) -> list[str]:
        return await self._wallets(
            select(WalletStats.wallet)
            .where(WalletStats.threshold == threshold)
            .where(WalletStats.alphaz > 0)
            .where(WalletStats.n >= min_n)
            .order_by(WalletStats.alphaz.desc(), WalletStats.wallet)
            .limit(limit)
        )

    async def list_positive_z_any_threshold(self, min_n: int, limit: int) -> list[str]:
        best = func.max(WalletStats.alphaz)
        return await self._wallets(
            select(WalletStats.wallet)
            .where(WalletStats.alphaz > 0)
            .where(WalletStats.n >= min_n)
            .group_by(WalletStats.wallet)
            .order_by(best.desc(), WalletStats.wallet)
            .limit(limit)
        )

    async def list_positive_score_wallets(self, limit: int) -> list[str]:
        return await self._wallets(
            select(WalletProfile.wallet)
            .where(WalletProfile.follow_score > 0)
            .order_by(WalletProfile.follow_score.desc(), WalletProfile.wallet)
            .limit(limit)
        )

    async def list_watchlist(self) -> list[str]:
        return await self._wallets(
            select(WalletWatchlist.wallet).order_by(WalletWatchlist.created_at)
        )

    async def add_to_watchlist(self, wallet: str, note: str | None = None) -> bool:
        stmt = (
            insert(WalletWatchlist)
            .values(wallet=wallet, note=note)
            .on_conflict_do_nothing(index_elements=[WalletWatchlist.wallet])
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
        return bool(result.rowcount)

    async def remove_from_watchlist(self, wallet: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                delete(WalletWatchlist).where(WalletWatchlist.wallet == wallet)
            )
        return bool(result.rowcount)

    async def get_live_cursor(self, wallet: str) -> datetime | None:
        async with self.db.session() as session:
            return await session.scalar(
                select(WalletLiveCursor.last_ts).where(WalletLiveCursor.wallet == wallet)
            )

    async def advance_live_cursor(self, wallet: str, last_ts: datetime) -> None:
        """Move the cursor forward; never backwards."""
        stmt = insert(WalletLiveCursor).values(wallet=wallet, last_ts=last_ts, updated_at=func.now())
        stmt = stmt.on_conflict_do_update(
            index_elements=[WalletLiveCursor.wallet],
            set_={
                "last_ts": func.greatest(WalletLiveCursor.last_ts, stmt.excluded.last_ts),
                "updated_at": func.now(),
            },
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    async def held_token_ids(self, wallets: list[str], limit: int) -> list[str]:
        """Distinct outcome tokens with positive net shares among the wallets."""
        if not wallets:
            return []
        token_id = Market.clob_token_ids.op("->>", return_type=String)(
            cast(WalletPosition.outcome_index, Integer)
        )
        query = (
            select(token_id.label("token_id"))
            .select_from(WalletPosition)
            .join(Market, Market.condition_id == WalletPosition.condition_id)
            .where(WalletPosition.net_shares > 0)
            .where(WalletPosition.wallet.in_(wallets))
            .where(Market.clob_token_ids.is_not(None))
            .distinct()
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return [row.token_id for row in result if row.token_id]

    async def upsert_token_price(self, token_id: str, price: float) -> None:
        stmt = insert(TokenPrice).values(token_id=token_id, price=price, fetched_at=func.now())
        stmt = stmt.on_conflict_do_update(
            index_elements=[TokenPrice.token_id],
            set_={"price": stmt.excluded.price, "fetched_at": func.now()},
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    # =========================================================================
    # Wallet statistics
    # =========================================================================

    async def load_cheap_buys(self, max_price: float) -> list[CheapBuy]:
        """BUYs at 0 < price <= max_price on markets with a known winner."""
        query = (
            select(
                Trade.wallet,
                Trade.condition_id,
                Trade.outcome_index,
                Trade.price,
                Trade.ts,
                Resolution.winning_outcome_index,
                Market.end_date,
            )
            .join(Resolution, Resolution.condition_id == Trade.condition_id)
            .join(Market, Market.condition_id == Trade.condition_id)
            .where(Trade.side == "BUY")
            .where(Trade.price > 0)
            .where(Trade.price <= max_price)
            .where(Trade.outcome_index.is_not(None))
            .where(Resolution.winning_outcome_index.is_not(None))
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return [
                CheapBuy(
                    wallet=r.wallet,
                    condition_id=r.condition_id,
                    outcome_index=r.outcome_index,
                    price=r.price,
                    ts=r.ts,
                    winning_outcome_index=r.winning_outcome_index,
                    end_date=r.end_date,
                )
                for r in result
            ]

    async def latest_buy_by_wallet(self, wallets: list[str]) -> dict[str, datetime]:
        if not wallets:
            return {}
        latest: dict[str, datetime] = {}
        async with self.db.session() as session:
            for chunk in _chunks(sorted(set(wallets)), 5000):
                result = await session.execute(
                    select(Trade.wallet, func.max(Trade.ts))
                    .where(Trade.side == "BUY")
                    .where(Trade.wallet.in_(chunk))
                    .group_by(Trade.wallet)
                )
                latest.update({wallet: ts for wallet, ts in result})
        return latest

    async def replace_wallet_stats(self, stats: list[WalletStatsResult]) -> int:
        """Swap the whole table in one transaction."""
        async with self.db.session() as session:
            await session.execute(delete(WalletStats))
            for chunk in _chunks([s.to_dict() for s in stats]):
                await session.execute(insert(WalletStats).values(chunk))
        return len(stats)

    async def replace_wallet_profiles(self, profiles: list[WalletProfileResult]) -> int:
        async with self.db.session() as session:
            await session.execute(delete(WalletProfile))
            for chunk in _chunks([p.to_dict() for p in profiles]):
                await session.execute(insert(WalletProfile).values(chunk))
        return len(profiles)

    # =========================================================================
    # Advice
    # =========================================================================

    async def load_market_quote(self, condition_id: str) -> MarketQuote | None:
        """Market outcomes and prices, with the latest YES token quote as fallback."""
        market = await self.get_market(condition_id)
        if market is None or market.outcome_pair is None:
            return None
        quote = MarketQuote(
            condition_id=condition_id,
            outcomes=market.outcome_pair.to_list(),
            outcome_prices=market.outcome_prices,
        )
        tokens = market.token_pair
        if tokens is not None:
            async with self.db.session() as session:
                quote.token_yes_price = await session.scalar(
                    select(TokenPrice.price).where(TokenPrice.token_id == tokens[quote.yes_index])
                )
        return quote

    async def load_market_positions(self, condition_id: str) -> list[PositionInput]:
        query = (
            select(
                WalletPosition.wallet,
                WalletPosition.outcome_index,
                WalletPosition.net_shares,
                WalletPosition.last_trade_at,
                func.coalesce(WalletProfile.follow_score, 0.0).label("follow_score"),
                func.coalesce(WalletProfile.alphaz_02, 0.0).label("alphaz"),
            )
            .outerjoin(WalletProfile, WalletProfile.wallet == WalletPosition.wallet)
            .where(WalletPosition.condition_id == condition_id)
            .where(WalletPosition.net_shares != 0)
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return [
                PositionInput(
                    wallet=r.wallet,
                    outcome_index=r.outcome_index,
                    net_shares=r.net_shares,
                    follow_score=r.follow_score,
                    alphaz=r.alphaz,
                    last_trade_at=r.last_trade_at,
                )
                for r in result
            ]

    async def load_market_flow(self, condition_id: str, since: datetime) -> list[FlowInput]:
        query = (
            select(
                Trade.wallet,
                Trade.outcome_index,
                Trade.side,
                Trade.price,
                Trade.size,
                Trade.ts,
                func.coalesce(WalletProfile.follow_score, 0.0).label("follow_score"),
                func.coalesce(WalletProfile.alphaz_02, 0.0).label("alphaz"),
            )
            .outerjoin(WalletProfile, WalletProfile.wallet == Trade.wallet)
            .where(Trade.condition_id == condition_id)
            .where(Trade.ts >= since)
            .where(Trade.outcome_index.is_not(None))
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return [
                FlowInput(
                    wallet=r.wallet,
                    outcome_index=r.outcome_index,
                    side=r.side,
                    price=r.price,
                    size=r.size,
                    ts=r.ts,
                    follow_score=r.follow_score,
                    alphaz=r.alphaz,
                )
                for r in result
            ]

    async def list_advice_candidates(
        self,
        limit: int,
        recent_days: int,
        min_follow_score: float,
    ) -> list[str]:
        """
        Open binary markets worth computing, strongest wallet signal first.

        A market qualifies when reliable wallets hold it or it traded
        recently. Ordered by sum(|net_shares| x follow_score), then by
        7-day trade count.
        """
        now = _utcnow()
        pos_signal = (
            select(
                func.coalesce(
                    func.sum(
                        func.abs(WalletPosition.net_shares)
                        * func.coalesce(WalletProfile.follow_score, 0.0)
                    ),
                    0.0,
                )
            )
            .outerjoin(WalletProfile, WalletProfile.wallet == WalletPosition.wallet)
            .where(WalletPosition.condition_id == Market.condition_id)
            .where(WalletPosition.net_shares != 0)
            .scalar_subquery()
        )
        recent_trades = (
            select(func.count())
            .select_from(Trade)
            .where(Trade.condition_id == Market.condition_id)
            .where(Trade.ts >= now - timedelta(days=7))
            .scalar_subquery()
        )
        held_by_reliable = (
            exists()
            .where(WalletPosition.condition_id == Market.condition_id)
            .where(WalletPosition.net_shares != 0)
            .where(WalletProfile.wallet == WalletPosition.wallet)
            .where(
                or_(
                    WalletProfile.is_followable.is_(True),
                    WalletProfile.follow_score > min_follow_score,
                )
            )
        )
        traded_recently = (
            exists()
            .where(Trade.condition_id == Market.condition_id)
            .where(Trade.ts >= now - timedelta(days=recent_days))
        )
        query = (
            select(Market.condition_id)
            .where(Market.closed.is_(False))
            .where(Market.outcomes.is_not(None))
            .where(func.jsonb_array_length(Market.outcomes) == 2)
            .where(and_(Market.question.is_not(None), Market.question != ""))
            .where(or_(held_by_reliable, traded_recently))
            .order_by(pos_signal.desc(), recent_trades.desc(), Market.condition_id)
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return [row[0] for row in result]

    async def upsert_advice(self, advice: AdviceResult) -> MarketAdvice:
        async with self.db.session() as session:
            result = await session.execute(advice_upsert(advice))
            return result.scalar_one()

    async def get_cached_advice(
        self, condition_id: str, max_age: timedelta
    ) -> tuple[MarketAdvice, Market] | None:
        query = (
            select(MarketAdvice, Market)
            .join(Market, Market.condition_id == MarketAdvice.condition_id)
            .where(MarketAdvice.condition_id == condition_id)
            .where(MarketAdvice.updated_at >= _utcnow() - max_age)
        )
        async with self.db.session() as session:
            row = (await session.execute(query)).first()
            return (row[0], row[1]) if row else None

    async def list_advice(
        self,
        sort: str = "confidence",
        min_confidence: int = 0,
        only_open: bool = True,
        limit: int = 50,
    ) -> list[tuple[MarketAdvice, Market]]:
        order_by = {
            "confidence": [MarketAdvice.confidence.desc(), func.abs(MarketAdvice.edge).desc()],
            "edge": [func.abs(MarketAdvice.edge).desc(), MarketAdvice.confidence.desc()],
            "trend": [
                func.abs(MarketAdvice.trend).desc().nulls_last(),
                MarketAdvice.confidence.desc(),
            ],
            "updated": [MarketAdvice.updated_at.desc()],
        }[sort]
        query = (
            select(MarketAdvice, Market)
            .join(Market, Market.condition_id == MarketAdvice.condition_id)
            .where(MarketAdvice.confidence >= min_confidence)
            .order_by(*order_by)
            .limit(limit)
        )
        if only_open:
            query = query.where(Market.closed.is_(False))
        async with self.db.session() as session:
            return [(row[0], row[1]) for row in await session.execute(query)]

    async def advice_stats(self, only_open: bool = True) -> dict[str, Any]:
        query = select(
            func.count().label("total"),
            func.count().filter(MarketAdvice.confidence >= 60).label("high_confidence"),
            func.count().filter(func.abs(MarketAdvice.edge) > 0.05).label("strong_edge"),
            func.count().filter(MarketAdvice.trend > 0.01).label("trending_yes"),
            func.count().filter(MarketAdvice.trend < -0.01).label("trending_no"),
            func.avg(MarketAdvice.confidence).label("avg_confidence"),
            func.avg(func.abs(MarketAdvice.edge)).label("avg_abs_edge"),
        ).select_from(MarketAdvice)
        query = query.join(Market, Market.condition_id == MarketAdvice.condition_id)
        if only_open:
            query = query.where(Market.closed.is_(False))
        async with self.db.session() as session:
            row = (await session.execute(query)).one()
        return {
            "total": row.total or 0,
            "high_confidence": row.high_confidence or 0,
            "strong_edge": row.strong_edge or 0,
            "trending_yes": row.trending_yes or 0,
            "trending_no": row.trending_no or 0,
            "avg_confidence": round(float(row.avg_confidence or 0)),
            "avg_abs_edge": round(float(row.avg_abs_edge or 0), 4),
        }

    # =========================================================================
    # Leaderboard
    # =========================================================================

    async def leaderboard(
        self,
        threshold: float,
        min_n: int,
        sort: str,
        limit: int,
        followable_only: bool = False,
    ) -> list[tuple[WalletProfile, WalletStats | None]]:
        """Profiles with their stats at one threshold; missing stats count as n=0."""
        order_by = {
            "followScore": WalletProfile.follow_score.desc(),
            "alphaz": WalletStats.alphaz.desc().nulls_last(),
            "wins": WalletStats.wins.desc().nulls_last(),
            "n": WalletStats.n.desc().nulls_last(),
        }[sort]
        query = (
            select(WalletProfile, WalletStats)
            .outerjoin(
                WalletStats,
                and_(
                    WalletStats.wallet == WalletProfile.wallet,
                    WalletStats.threshold == threshold,
                ),
            )
            .where(func.coalesce(WalletStats.n, 0) >= min_n)
            .order_by(order_by, WalletProfile.wallet)
            .limit(limit)
        )
        if followable_only:
            query = query.where(WalletProfile.is_followable.is_(True))
        async with self.db.session() as session:
            return [(row[0], row[1]) for row in await session.execute(query)]

    async def wallet_detail(self, wallet: str) -> dict[str, Any] | None:
        async with self.db.session() as session:
            profile = await session.get(WalletProfile, wallet)
            stats = (
                await session.scalars(
                    select(WalletStats)
                    .where(WalletStats.wallet == wallet)
                    .order_by(WalletStats.threshold.desc())
                )
            ).all()
            positions = (
                await session.scalars(
                    select(WalletPosition)
                    .where(WalletPosition.wallet == wallet)
                    .where(WalletPosition.net_shares != 0)
                    .order_by(WalletPosition.last_trade_at.desc().nulls_last())
                    .limit(100)
                )
            ).all()
        if profile is None and not stats and not positions:
            return None
        return {"profile": profile, "stats": list(stats), "positions": list(positions)}

    # =========================================================================
    # Run audit log
    # =========================================================================

    async def start_run(self, job: str, request_id: str, status: str = "running") -> int:
        async with self.db.session() as session:
            run = EtlRun(job=job, request_id=request_id, status=status, started_at=_utcnow())
            session.add(run)
            await session.flush()
            return run.id

    async def finish_run(
        self,
        run_id: int,
        status: str,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        stmt = (
            update(EtlRun)
            .where(EtlRun.id == run_id)
            .values(
                status=status,
                summary=json.loads(json.dumps(summary, default=str)) if summary else None,
                error=error,
                finished_at=func.now(),
            )
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    async def recent_runs(self, limit: int = 20) -> list[EtlRun]:
        async with self.db.session() as session:
            result = await session.scalars(
                select(EtlRun).order_by(EtlRun.started_at.desc()).limit(limit)
            )
            return list(result.all())

    # =========================================================================
    # Operator status
    # =========================================================================

    async def status_counts(self) -> dict[str, Any]:
        """Row counts, backfill backlog, cool-downs and failing cursors."""
        async with self.db.session() as session:
            counts = {}
            for name, model in (
                ("markets", Market),
                ("resolutions", Resolution),
                ("trades", Trade),
                ("wallet_positions", WalletPosition),
                ("wallet_stats", WalletStats),
                ("wallet_profiles", WalletProfile),
                ("market_advice", MarketAdvice),
                ("watchlist", WalletWatchlist),
            ):
                counts[name] = await session.scalar(select(func.count()).select_from(model))
            counts["resolutions_pending"] = await session.scalar(
                select(func.count())
                .select_from(Resolution)
                .where(Resolution.winning_token_id.is_(None))
            )

            backfill = (
                await session.execute(
                    select(
                        func.count().label("total"),
                        func.count().filter(TradeBackfill.done.is_(True)).label("done"),
                        func.count()
                        .filter(TradeBackfill.done.is_(False))
                        .label("pending"),
                        func.count()
                        .filter(
                            TradeBackfill.done.is_(False),
                            TradeBackfill.next_retry_at > func.now(),
                        )
                        .label("cooling_down"),
                    )
                    .select_from(TradeBackfill)
                )
            ).one()
            failing = (
                await session.scalars(
                    select(TradeBackfill)
                    .where(TradeBackfill.fail_count > 0)
                    .order_by(TradeBackfill.fail_count.desc())
                    .limit(10)
                )
            ).all()
            followable = await session.scalar(
                select(func.count())
                .select_from(WalletProfile)
                .where(WalletProfile.is_followable.is_(True))
            )

        return {
            "counts": counts,
            "followable_wallets": followable or 0,
            "backfill": {
                "total": backfill.total,
                "done": backfill.done,
                "pending": backfill.pending,
                "cooling_down": backfill.cooling_down,
            },
            "failing_cursors": [
                {
                    "condition_id": c.condition_id,
                    "next_offset": c.next_offset,
                    "fail_count": c.fail_count,
                    "next_retry_at": c.next_retry_at,
                    "last_error": c.last_error,
                }
                for c in failing
            ],
        }
