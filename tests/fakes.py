"""In-memory fakes for Sharpline tests.

The services take their store and upstream client as constructor
arguments, so unit tests run against the in-memory fakes below instead of
PostgreSQL and the Polymarket APIs.
"""

from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from app.models.domain import OutcomePair
from app.services.polymarket_client.normalize import (
    NormalizedMarket,
    NormalizedTrade,
    trade_pk,
)

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def make_trade(
    wallet: str = "0x" + "a" * 40,
    condition_id: str = "0xmarket0001",
    side: str = "BUY",
    price: float = 0.02,
    size: float = 100.0,
    outcome_index: int | None = 0,
    ts: datetime = T0,
    tx_hash: str | None = None,
) -> NormalizedTrade:
    return NormalizedTrade(
        pk=trade_pk(tx_hash, condition_id, ts, wallet, side, price, size, outcome_index),
        ts=ts,
        wallet=wallet,
        condition_id=condition_id,
        side=side,
        price=price,
        size=size,
        outcome_index=outcome_index,
        tx_hash=tx_hash,
    )


def make_market(condition_id: str = "0xmarket0001", closed: bool = True) -> NormalizedMarket:
    return NormalizedMarket(
        condition_id=condition_id,
        question=f"Will {condition_id} happen?",
        slug=condition_id,
        event_slug=None,
        group_item_title=None,
        end_date=T0,
        closed=closed,
        outcomes=OutcomePair("Yes", "No"),
        clob_token_ids=OutcomePair(f"{condition_id}-yes", f"{condition_id}-no"),
        outcome_prices=[0.1, 0.9],
    )


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLocks:
    """Advisory locks held in a set."""

    def __init__(self, held: tuple[int, ...] = ()):
        self.held = set(held)
        self.acquired: list[int] = []
        self.released: list[int] = []

    @asynccontextmanager
    async def hold(self, key: int):
        if key in self.held:
            yield False
            return
        self.held.add(key)
        self.acquired.append(key)
        try:
            yield True
        finally:
            self.held.discard(key)
            self.released.append(key)


class FakeStore:
    """In-memory stand-in for SqlStore covering the job code paths."""

    def __init__(self):
        self.state: dict[str, str] = {}
        self.markets: dict[str, NormalizedMarket | None] = {}
        self.resolutions: dict[str, object] = {}
        self.pending_resolutions: dict[str, datetime] = {}
        self.trades: dict[str, NormalizedTrade] = {}
        self.positions: dict[tuple[str, str, int], float] = defaultdict(float)
        self.position_batches: list[list[NormalizedTrade]] = []
        self.backfill: dict[str, dict] = {}
        self.backfill_queue: list = []
        self.backfill_created = 0
        self.cursors: dict[str, datetime] = {}
        self.prices: dict[str, float] = {}
        self.unresolved: list = []
        self.wallet_lists: dict[str, list[str]] = defaultdict(list)
        self.held_tokens: list[str] = []
        self.runs: list[dict] = []
        self.fail_insert = False

    # Checkpoint store

    async def get_state(self, key: str, default: str) -> str:
        return self.state.get(key, default)

    async def set_state(self, key: str, value: str) -> None:
        self.state[key] = value

    # Markets and resolutions

    async def upsert_markets(self, markets: list[NormalizedMarket]) -> int:
        for market in markets:
            self.markets[market.condition_id] = market
        return len({m.condition_id for m in markets})

    async def ensure_market_placeholders(self, condition_ids: list[str]) -> int:
        created = 0
        for cid in set(condition_ids):
            if cid and cid not in self.markets:
                self.markets[cid] = None
                created += 1
        return created

    async def list_unresolved_closed_markets(
        self, limit: int, recheck_after: timedelta = timedelta(hours=6)
    ) -> list:
        """Never-checked markets first, then winnerless ones due a recheck."""
        cutoff = datetime.now(timezone.utc) - recheck_after
        waiting = [m for m in self.unresolved if m.condition_id not in self.resolutions]
        fresh = [m for m in waiting if m.condition_id not in self.pending_resolutions]
        due = [m for m in waiting if self.pending_resolutions.get(m.condition_id, cutoff) < cutoff]
        return (fresh + due)[:limit]

    async def upsert_resolution(self, resolution) -> None:
        self.resolutions[resolution.condition_id] = resolution
        self.pending_resolutions.pop(resolution.condition_id, None)

    async def mark_resolution_pending(self, condition_id: str) -> None:
        if condition_id not in self.resolutions:
            self.pending_resolutions[condition_id] = datetime.now(timezone.utc)

    # Trades

    async def insert_trades(self, trades: list[NormalizedTrade]) -> list[NormalizedTrade]:
        if self.fail_insert:
            raise RuntimeError("insert failed")
        inserted = []
        for trade in trades:
            if trade.pk not in self.trades:
                self.trades[trade.pk] = trade
                inserted.append(trade)
        return inserted

    # Backfill cursors

    async def create_backfill_cursors(self, limit: int) -> int:
        return self.backfill_created

    async def pick_backfill_batch(self, limit: int) -> list:
        return self.backfill_queue[:limit]

    async def mark_backfill_progress(
        self, condition_id: str, next_offset: int, done: bool
    ) -> None:
        self.backfill[condition_id] = {"next_offset": next_offset, "done": done}

    async def mark_backfill_error(
        self, condition_id: str, error: str, cooldown_minutes: int = 30
    ) -> None:
        row = self.backfill.setdefault(condition_id, {"next_offset": 0, "done": False})
        row["last_error"] = error
        row["fail_count"] = row.get("fail_count", 0) + 1

    # Positions

    async def add_position_deltas(self, trades: list[NormalizedTrade]) -> int:
        self.position_batches.append(list(trades))
        keys = set()
        for trade in trades:
            key = (trade.wallet, trade.condition_id, trade.outcome_index)
            self.positions[key] += trade.signed_size
            keys.add(key)
        return len(keys)

    async def clamp_near_zero_positions(self, tolerance: float = 1e-9) -> int:
        clamped = 0
        for key, net in self.positions.items():
            if net != 0 and abs(net) < tolerance:
                self.positions[key] = 0.0
                clamped += 1
        return clamped

    # Wallet selection and live cursors

    async def list_followable_wallets(self, limit: int) -> list[str]:
        return self.wallet_lists["followable"][:limit]

    async def list_positive_z_wallets(
        self, threshold: float, limit: int, min_n: int = 0
    ) -> list[str]:
        return self.wallet_lists["positive_z"][:limit]

    async def list_positive_score_wallets(self, limit: int) -> list[str]:
        return self.wallet_lists["positive_score"][:limit]

    async def list_positive_z_any_threshold(self, min_n: int, limit: int) -> list[str]:
        return self.wallet_lists["positive_z_any"][:limit]

    async def list_watchlist(self) -> list[str]:
        return list(self.wallet_lists["watchlist"])

    async def get_live_cursor(self, wallet: str) -> datetime | None:
        return self.cursors.get(wallet)

    async def advance_live_cursor(self, wallet: str, last_ts: datetime) -> None:
        current = self.cursors.get(wallet)
        self.cursors[wallet] = last_ts if current is None else max(current, last_ts)

    async def held_token_ids(self, wallets: list[str], limit: int) -> list[str]:
        return self.held_tokens[:limit]

    async def upsert_token_price(self, token_id: str, price: float) -> None:
        self.prices[token_id] = price

    # Run log

    async def start_run(self, job: str, request_id: str, status: str = "running") -> int:
        self.runs.append({"job": job, "request_id": request_id, "status": status})
        return len(self.runs)

    async def finish_run(self, run_id: int, status: str, summary=None, error=None) -> None:
        self.runs[run_id - 1].update(status=status, summary=summary, error=error)


class FakePolymarketClient:
    """Serves canned pages keyed the way the jobs request them."""

    def __init__(self):
        self.market_pages: dict[tuple[bool | None, int], list[NormalizedMarket]] = {}
        self.trade_pages: dict[tuple[str, int], tuple[int, list[NormalizedTrade]]] = {}
        self.trade_errors: dict[str, Exception] = {}
        self.user_trades: dict[tuple[str, str], list[NormalizedTrade]] = {}
        self.winners: dict[str, object] = {}
        self.winner_errors: dict[str, Exception] = {}
        self.token_prices: dict[str, float] = {}
        self.calls: list[tuple] = []

    async def fetch_markets_page(self, limit=500, offset=0, closed=None):
        self.calls.append(("markets", offset, closed))
        markets = self.market_pages.get((closed, offset), [])
        return len(markets), markets

    async def fetch_trades_page(self, condition_id, limit=500, offset=0, side="BUY"):
        self.calls.append(("trades", condition_id, offset))
        if condition_id in self.trade_errors:
            raise self.trade_errors[condition_id]
        return self.trade_pages.get((condition_id, offset), (0, []))

    async def fetch_user_trades_page(self, wallet, limit=200, offset=0, side="BUY"):
        self.calls.append(("user_trades", wallet, side))
        trades = self.user_trades.get((wallet, side), [])
        return len(trades), trades

    async def fetch_market_winner(self, condition_id, token_ids):
        self.calls.append(("winner", condition_id))
        if condition_id in self.winner_errors:
            raise self.winner_errors[condition_id]
        return self.winners.get(condition_id)

    async def fetch_token_price(self, token_id):
        self.calls.append(("price", token_id))
        return self.token_prices.get(token_id)
