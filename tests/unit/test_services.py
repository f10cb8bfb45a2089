"""Unit tests for the compute and compute-markets jobs."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from app.config.pipeline import AdviceConfig, ScoringConfig
from app.services.advice.model import MarketQuote
from app.services.advice.service import AdviceService, main_driver
from app.services.cron_guard import CronContext, JobStatus
from app.services.jobs import JOBS, UnknownJobError, get_job
from app.services.scoring.engine import CheapBuy
from app.services.scoring.service import WalletStatsService
from tests.fakes import FakeClock, FakeStore

NOW = datetime.now(timezone.utc)
WALLET = "0x" + "e" * 40


class ScoringStore(FakeStore):
    def __init__(self, buys):
        super().__init__()
        self.buys = buys
        self.stats = None
        self.profiles = None

    async def load_cheap_buys(self, max_price):
        return [b for b in self.buys if b.price <= max_price]

    async def replace_wallet_stats(self, stats):
        self.stats = stats
        return len(stats)

    async def latest_buy_by_wallet(self, wallets):
        return {w: NOW for w in wallets}

    async def replace_wallet_profiles(self, profiles):
        self.profiles = profiles
        return len(profiles)


class AdviceStore(FakeStore):
    def __init__(self, quotes):
        super().__init__()
        self.quotes = quotes
        self.cached = {}
        self.upserted = []

    async def load_market_quote(self, condition_id):
        return self.quotes.get(condition_id)

    async def load_market_positions(self, condition_id):
        return []

    async def load_market_flow(self, condition_id, since):
        return []

    async def upsert_advice(self, advice):
        self.upserted.append(advice)
        return advice

    async def get_cached_advice(self, condition_id, max_age):
        return self.cached.get(condition_id)

    async def get_market(self, condition_id):
        return {"condition_id": condition_id}

    async def list_advice_candidates(self, limit, recent_days, min_follow_score):
        return list(self.quotes)[:limit]


def buys(count, wins):
    return [
        CheapBuy(
            wallet=WALLET,
            condition_id=f"0xmarket{i:04d}",
            outcome_index=0,
            price=0.02,
            ts=NOW - timedelta(days=1),
            winning_outcome_index=0 if i < wins else 1,
        )
        for i in range(count)
    ]


class TestWalletStatsService:
    """Test the compute job."""

    async def test_replaces_stats_and_profiles(self):
        store = ScoringStore(buys(50, 4))
        ctx = CronContext("compute", "req-1", budget_seconds=55.0, clock=FakeClock())

        result = await WalletStatsService(store, ScoringConfig()).run(ctx)

        assert result.status == JobStatus.SUCCESS
        assert result.summary["cheapBuys"] == 50
        assert result.summary["walletStatsRows"] == 2
        assert result.summary["profiles"] == 1
        assert result.summary["followable"] == 1
        assert result.summary["significant"] == 1
        assert "last_compute_at" in store.state
        assert json.loads(store.state["last_compute_summary"])["wallets"] == 1

    async def test_over_budget_skips_profiles(self):
        """Stats are still written; profiles wait for the next run."""
        store = ScoringStore(buys(10, 1))
        clock = FakeClock()
        ctx = CronContext("compute", "req-1", budget_seconds=55.0, clock=clock)
        clock.advance(100)

        result = await WalletStatsService(store, ScoringConfig()).run(ctx)

        assert result.status == JobStatus.PARTIAL
        assert result.summary["stoppedAt"] == "wallet_stats"
        assert store.stats is not None
        assert store.profiles is None


class TestAdviceService:
    """Test advice caching and the compute-markets job."""

    def setup_method(self):
        self.store = AdviceStore(
            {
                "0xbinary0001": MarketQuote("0xbinary0001", ["Yes", "No"], [0.3, 0.7]),
                "0xmulti00001": MarketQuote("0xmulti00001", ["A", "B", "C"]),
            }
        )
        self.service = AdviceService(self.store, AdviceConfig())

    async def test_cached_advice_served(self):
        self.store.cached["0xbinary0001"] = ("row", "market")

        result = await self.service.get_advice("0xbinary0001")

        assert result.source == "cache"
        assert self.store.upserted == []

    async def test_stale_advice_recomputed(self):
        result = await self.service.get_advice("0xbinary0001")

        assert result.source == "computed"
        assert len(self.store.upserted) == 1
        assert self.store.upserted[0].p_model_yes == pytest.approx(0.3)

    async def test_unknown_market(self):
        assert await self.service.get_advice("0xmissing001") is None

    async def test_batch_counts(self):
        ctx = CronContext("compute-markets", "req-1", budget_seconds=55.0, clock=FakeClock())

        result = await self.service.run(ctx)

        assert result.status == JobStatus.SUCCESS
        assert result.summary == {"candidates": 2, "computed": 1, "skipped": 1, "errors": 0}
        assert "last_compute_markets_at" in self.store.state

    async def test_batch_stops_over_budget(self):
        clock = FakeClock()
        ctx = CronContext("compute-markets", "req-1", budget_seconds=55.0, clock=clock)
        clock.advance(60)

        result = await self.service.run(ctx)

        assert result.status == JobStatus.PARTIAL
        assert result.summary["stoppedAt"] == "markets"
        assert result.summary["computed"] == 0


class TestMainDriver:
    def test_skips_baseline_and_neutral(self):
        drivers = [
            {"name": "Market price (baseline)", "effect": "neutral"},
            {"name": "Net position pressure", "effect": "neutral"},
            {"name": "Recent flow (72h)", "effect": "pushes NO"},
        ]
        assert main_driver(drivers) == "Recent flow (72h): pushes NO"

    def test_empty(self):
        assert main_driver(None) == ""


class TestJobRegistry:
    """Test the job name to lock key registry."""

    def test_every_job_has_its_lock(self):
        assert {name: get_job(name).lock_key for name in JOBS} == {
            "sync": 9001,
            "compute": 9002,
            "sync-live": 9003,
            "compute-markets": 9004,
        }

    def test_unknown_job(self):
        with pytest.raises(UnknownJobError):
            get_job("explode")
