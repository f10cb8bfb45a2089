"""Unit tests for the position ledger."""

import pytest

from app.services.positions import PositionLedger
from tests.fakes import FakeStore, make_trade

WALLET = "0x" + "b" * 40


class TestPositionLedger:
    """net_shares = sum(BUY.size) - sum(SELL.size) per (wallet, market, outcome)."""

    def setup_method(self):
        self.store = FakeStore()
        self.ledger = PositionLedger(self.store)

    async def test_buys_minus_sells(self):
        trades = [
            make_trade(wallet=WALLET, side="BUY", size=100, tx_hash="0x1"),
            make_trade(wallet=WALLET, side="BUY", size=50, tx_hash="0x2"),
            make_trade(wallet=WALLET, side="SELL", size=30, tx_hash="0x3"),
        ]
        updated = await self.ledger.apply_inserted_trades(trades)

        assert updated == 1
        assert self.store.positions[(WALLET, "0xmarket0001", 0)] == pytest.approx(120)

    async def test_outcomes_tracked_separately(self):
        trades = [
            make_trade(wallet=WALLET, outcome_index=0, size=10, tx_hash="0x1"),
            make_trade(wallet=WALLET, outcome_index=1, size=20, tx_hash="0x2"),
        ]
        assert await self.ledger.apply_inserted_trades(trades) == 2
        assert self.store.positions[(WALLET, "0xmarket0001", 1)] == 20

    async def test_trades_without_outcome_ignored(self):
        """Only trades with an outcome index reach the store."""
        trades = [
            make_trade(wallet=WALLET, outcome_index=None, tx_hash="0x1"),
            make_trade(wallet=WALLET, outcome_index=0, size=5, tx_hash="0x2"),
        ]
        await self.ledger.apply_inserted_trades(trades)

        assert len(self.store.position_batches) == 1
        assert [t.tx_hash for t in self.store.position_batches[0]] == ["0x2"]

    async def test_nothing_applicable_skips_store(self):
        assert await self.ledger.apply_inserted_trades([]) == 0
        assert await self.ledger.apply_inserted_trades([make_trade(outcome_index=None)]) == 0
        assert self.store.position_batches == []

    async def test_residue_clamped_to_zero(self):
        """Float residue of a full round trip is clamped to exactly zero."""
        trades = [
            make_trade(wallet=WALLET, side="BUY", size=0.1, tx_hash="0x1"),
            make_trade(wallet=WALLET, side="BUY", size=0.2, tx_hash="0x2"),
            make_trade(wallet=WALLET, side="SELL", size=0.3, tx_hash="0x3"),
        ]
        await self.ledger.apply_inserted_trades(trades)
        assert self.store.positions[(WALLET, "0xmarket0001", 0)] == 0.0
