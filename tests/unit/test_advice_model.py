"""Unit tests for the log-odds advice model.

CRITICAL TESTS:
- With no wallet signal the model MUST return the market price unchanged
- pModelYes MUST stay strictly inside (0, 1)
- Any real evidence MUST give a confidence of at least 5
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.services.advice.model import (
    BASELINE_DRIVER,
    AdviceModel,
    FlowInput,
    MarketQuote,
    PositionInput,
    logit,
    sigmoid,
    wallet_weight,
)

NOW = datetime(2026, 10, 19, 12, tzinfo=timezone.utc)


def quote(p_yes: float = 0.10, outcomes=("Yes", "No")) -> MarketQuote:
    return MarketQuote(
        condition_id="0xmarket0001",
        outcomes=list(outcomes),
        outcome_prices=[p_yes, 1 - p_yes],
    )


def position(wallet: str, outcome_index: int, net_shares: float) -> PositionInput:
    return PositionInput(
        wallet=wallet,
        outcome_index=outcome_index,
        net_shares=net_shares,
        follow_score=50.0,
        alphaz=2.0,
    )


def flow(wallet: str, outcome_index: int, hours_ago: float, side: str = "BUY") -> FlowInput:
    return FlowInput(
        wallet=wallet,
        outcome_index=outcome_index,
        side=side,
        price=0.2,
        size=500.0,
        ts=NOW - timedelta(hours=hours_ago),
        follow_score=50.0,
        alphaz=2.0,
    )


class TestHelpers:
    """Test the numeric helpers."""

    def test_logit_sigmoid_inverse(self):
        for p in (0.01, 0.1, 0.5, 0.9):
            assert sigmoid(logit(p)) == pytest.approx(p)

    def test_logit_clamped(self):
        """logit(0) and logit(1) are finite."""
        assert logit(0.0) < -13
        assert logit(1.0) > 13

    def test_wallet_weight_floor(self):
        """Every wallet contributes at least a little."""
        assert wallet_weight(None, -5) == pytest.approx(0.0001)
        assert wallet_weight(100, 5) == 1.0
        assert wallet_weight(50, 2) == pytest.approx(0.25)


class TestMarketQuote:
    """Test the market prior."""

    def test_yes_found_by_name(self):
        q = MarketQuote("cid", ["No", "Yes"], outcome_prices=[0.7, 0.3])
        assert q.yes_index == 1
        assert q.p_mkt_yes() == 0.3

    def test_falls_back_to_token_price_then_half(self):
        assert MarketQuote("cid", ["Yes", "No"], token_yes_price=0.4).p_mkt_yes() == 0.4
        assert MarketQuote("cid", ["Yes", "No"], outcome_prices=[0.0, 1.0]).p_mkt_yes() == 0.5


class TestAdviceModel:
    """Test the model end to end."""

    def setup_method(self):
        self.model = AdviceModel()

    def test_no_signal_returns_market_price(self):
        """pMkt 0.10 and no wallets: pModel 0.10, confidence 10."""
        result = self.model.compute(quote(0.10), [], [], NOW)

        assert result.p_model_yes == pytest.approx(0.10)
        assert result.confidence == 10
        assert result.pos_pressure == 0.0
        assert result.flow_pressure == 0.0
        assert result.p_low == 0.0
        assert result.p_high == pytest.approx(0.10 + 0.135)
        assert result.recommended_side == "NO"

    def test_non_binary_market(self):
        assert self.model.compute(quote(outcomes=("A", "B", "C")), [], [], NOW) is None

    def test_yes_positions_push_up(self):
        positions = [position(f"0xw{i}", 0, 1000) for i in range(5)]
        result = self.model.compute(quote(0.10), positions, [], NOW)

        assert result.pos_pressure == pytest.approx(1.0)
        assert result.p_model_yes > 0.10
        assert result.edge > 0
        assert result.top_drivers[1].effect == "pushes YES"

    def test_no_flow_pushes_down(self):
        flows = [flow(f"0xw{i}", 1, hours_ago=2) for i in range(5)]
        result = self.model.compute(quote(0.50), [], flows, NOW)

        assert result.flow_pressure == pytest.approx(-1.0)
        assert result.p_model_yes < 0.50

    def test_probability_stays_inside_unit_interval(self):
        """Saturated pressures on an extreme price never reach 0 or 1."""
        positions = [position(f"0xw{i}", 0, 1e9) for i in range(20)]
        flows = [flow(f"0xw{i}", 0, hours_ago=0) for i in range(20)]
        high = self.model.compute(quote(0.999999), positions, flows, NOW)
        assert 0 < high.p_model_yes < 1

        positions = [position(f"0xw{i}", 1, 1e9) for i in range(20)]
        flows = [flow(f"0xw{i}", 1, hours_ago=0) for i in range(20)]
        low = self.model.compute(quote(0.000001), positions, flows, NOW)
        assert 0 < low.p_model_yes < 1

    def test_evidence_gives_minimum_confidence(self):
        result = self.model.compute(quote(0.3), [position("0xw1", 0, 1.0)], [], NOW)
        assert result.confidence >= 5

    def test_old_flow_ignored(self):
        """Trades older than the 72 hour window carry no weight."""
        result = self.model.compute(quote(0.3), [], [flow("0xw1", 0, hours_ago=100)], NOW)
        assert result.flow_pressure == 0.0
        assert result.confidence == 10

    def test_sells_subtract(self):
        flows = [flow("0xw1", 0, hours_ago=1), flow("0xw1", 0, hours_ago=1, side="SELL")]
        result = self.model.compute(quote(0.3), [], flows, NOW)
        assert result.flow_yes_cost == pytest.approx(0.0)

    def test_hedged_wallets_lower_agreement(self):
        """A wallet holding both outcomes counts as hedged."""
        positions = [position("0xw1", 0, 100), position("0xw1", 1, 100), position("0xw2", 0, 50)]
        result = self.model.compute(quote(0.3), positions, [], NOW)
        assert result.hedge_agreement == pytest.approx(0.5)
        assert result.top_drivers[3].effect == "medium agreement"

    def test_drivers_and_top_wallets(self):
        positions = [position("0xsmall", 0, 10), position("0xbig", 1, 900)]
        result = self.model.compute(quote(0.3), positions, [], NOW)

        assert result.top_drivers[0].name == BASELINE_DRIVER
        assert len(result.top_drivers) == 5
        assert [w.wallet for w in result.top_wallets] == ["0xbig", "0xsmall"]
        assert result.top_wallets[0].side == "NO"

    def test_confidence_band_narrows_with_confidence(self):
        positions = [position(f"0xw{i}", 0, 1000) for i in range(20)]
        flows = [flow(f"0xw{i}", 0, hours_ago=1) for i in range(20)]
        strong = self.model.compute(quote(0.3), positions, flows, NOW)
        weak = self.model.compute(quote(0.3), [], [], NOW)

        assert strong.confidence > weak.confidence
        assert (strong.p_high - strong.p_low) < (weak.p_high - weak.p_low)
