"""Unit tests for the live trade refresh."""

import json
from datetime import timedelta

import pytest

from app.config.pipeline import LiveConfig
from app.services.cron_guard import CronContext, JobStatus
from app.services.live_refresh import LiveRefreshService, select_wallets
from tests.fakes import T0, FakeClock, FakePolymarketClient, FakeStore, make_trade

W1 = "0x" + "1" * 40
W2 = "0x" + "2" * 40
W3 = "0x" + "3" * 40


class TestWalletSelection:
    """Test the ranked merge of candidate lists."""

    def test_first_occurrence_wins(self):
        selected = select_wallets([[W1, W2], [W2, W3], [W1]], max_target=10)
        assert selected == [W1, W2, W3]

    def test_capped(self):
        assert select_wallets([[W1, W2], [W3]], max_target=2) == [W1, W2]

    def test_empty_entries_skipped(self):
        assert select_wallets([["", W1], []], max_target=5) == [W1]


class TestRefreshWallet:
    """Test one wallet's live refresh."""

    def setup_method(self):
        self.store = FakeStore()
        self.client = FakePolymarketClient()
        self.service = LiveRefreshService(self.store, self.client, LiveConfig())
        self.counters = {"positionsUpdated": 0, "cursorsUpdated": 0}

    async def test_only_new_trades_reach_the_ledger(self):
        """A trade already stored by backfill must not be applied again."""
        known = make_trade(wallet=W1, size=100, tx_hash="0xold")
        self.store.trades[known.pk] = known
        fresh = make_trade(wallet=W1, size=40, tx_hash="0xnew", ts=T0 + timedelta(minutes=5))
        sold = make_trade(
            wallet=W1, side="SELL", size=10, tx_hash="0xsell", ts=T0 + timedelta(minutes=6)
        )
        self.client.user_trades[(W1, "BUY")] = [known, fresh]
        self.client.user_trades[(W1, "SELL")] = [sold]

        result = await self.service.refresh_wallet(W1, self.counters)

        assert result.count == 2
        applied = [t.tx_hash for batch in self.store.position_batches for t in batch]
        assert sorted(applied) == ["0xnew", "0xsell"]
        assert self.store.positions[(W1, "0xmarket0001", 0)] == pytest.approx(30)
        assert self.store.cursors[W1] == T0 + timedelta(minutes=6)
        assert self.counters == {"positionsUpdated": 1, "cursorsUpdated": 1}

    async def test_cursor_filters_old_trades(self):
        """Only trades strictly after the cursor are considered."""
        self.store.cursors[W1] = T0
        at_cursor = make_trade(wallet=W1, tx_hash="0x1", ts=T0)
        after = make_trade(wallet=W1, tx_hash="0x2", ts=T0 + timedelta(seconds=1))
        self.client.user_trades[(W1, "BUY")] = [at_cursor, after]

        result = await self.service.refresh_wallet(W1, self.counters)

        assert result.count == 1
        assert at_cursor.pk not in self.store.trades

    async def test_nothing_new_skips(self):
        self.store.cursors[W1] = T0
        self.client.user_trades[(W1, "BUY")] = [make_trade(wallet=W1, ts=T0)]

        result = await self.service.refresh_wallet(W1, self.counters)

        assert result.reason == "no_new_trades"
        assert self.store.cursors[W1] == T0
        assert self.counters["cursorsUpdated"] == 0


class TestLiveRun:
    """Test the whole sync-live invocation."""

    def setup_method(self):
        self.store = FakeStore()
        self.client = FakePolymarketClient()
        self.clock = FakeClock()
        self.config = LiveConfig(max_wallets_per_run=2)
        self.service = LiveRefreshService(self.store, self.client, self.config)

    def ctx(self):
        return CronContext("sync-live", "req-1", budget_seconds=25.0, clock=self.clock)

    async def test_targets_merge_sources(self):
        self.store.wallet_lists["followable"] = [W1]
        self.store.wallet_lists["positive_z"] = [W1, W2]
        self.store.wallet_lists["watchlist"] = [W3]

        assert await self.service.target_wallets() == [W1, W2, W3]

    async def test_top_wallets_refreshed_every_run(self):
        """Each run starts again from the highest-priority wallets."""
        self.store.wallet_lists["followable"] = [W1, W2, W3]

        for _ in range(2):
            self.client.calls.clear()
            await self.service.run(self.ctx())
            refreshed = sorted({c[1] for c in self.client.calls if c[0] == "user_trades"})
            assert refreshed == [W1, W2], "lower-ranked wallet must wait for a free slot"

        assert "live_wallet_offset" not in self.store.state

    async def test_summary_and_prices(self):
        self.store.wallet_lists["followable"] = [W1]
        self.client.user_trades[(W1, "BUY")] = [make_trade(wallet=W1, tx_hash="0x1")]
        self.store.held_tokens = ["tok-yes", "tok-missing"]
        self.client.token_prices["tok-yes"] = 0.12

        result = await self.service.run(self.ctx())

        assert result.status == JobStatus.SUCCESS
        assert result.summary == {
            "walletsTargeted": 1,
            "walletsProcessed": 1,
            "tradesInserted": 1,
            "positionsUpdated": 1,
            "pricesFetched": 1,
            "cursorsUpdated": 1,
            "errors": 0,
        }
        assert self.store.prices == {"tok-yes": 0.12}
        assert json.loads(self.store.state["last_live_sync_summary"])["tradesInserted"] == 1

    async def test_wallet_failure_counted(self):
        """A failing wallet is an error, and its prices are not refreshed."""
        self.store.wallet_lists["followable"] = [W1]
        self.client.user_trades[(W1, "BUY")] = [make_trade(wallet=W1, tx_hash="0x1")]
        self.store.fail_insert = True
        self.store.held_tokens = ["tok-yes"]

        result = await self.service.run(self.ctx())

        assert result.summary["errors"] == 1
        assert result.summary["pricesFetched"] == 0
        assert ("price", "tok-yes") not in self.client.calls

    async def test_over_budget_is_partial(self):
        self.store.wallet_lists["followable"] = [W1, W2]
        ctx = self.ctx()
        self.clock.advance(60)

        result = await self.service.run(ctx)

        assert result.status == JobStatus.PARTIAL
        assert result.summary["walletsProcessed"] == 0
