"""Log-odds advice model.

No machine learning, pure statistics. The market's quoted YES price is the
prior; reliable wallets' net positions and their recent order flow shift it
in log-odds space:

    pModelYes = sigmoid(logit(pMktYes) + K_POS x posPressure + K_FLOW x flowPressure)

Each pressure term is a weighted YES-minus-NO imbalance in [-1, 1], where a
wallet's weight is

    w = clamp(follow_score / 100, 0.01, 1) x clamp((alphaZ + 1) / 6, 0.01, 1)

so every wallet contributes at least a little. With no wallet signal both
pressures are 0 and the model returns the market price unchanged.
"""

import math
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from app.config.pipeline import AdviceConfig

LOGIT_CLAMP = 1e-6
SIGMOID_SATURATION = 20.0
FLOW_SATURATION_COST = 1000.0
POSITION_SATURATION_SHARES = 500.0
DIVERSITY_SATURATION_WALLETS = 20
NEGLIGIBLE_EVIDENCE = 0.001
MIN_CONFIDENCE = 5
EFFECT_THRESHOLD = 0.05
TOP_WALLETS = 10
BASELINE_DRIVER = "Market price (baseline)"


def logit(p: float) -> float:
    p = max(LOGIT_CLAMP, min(1 - LOGIT_CLAMP, p))
    return math.log(p / (1 - p))


def sigmoid(x: float) -> float:
    if x > SIGMOID_SATURATION:
        return 1.0
    if x < -SIGMOID_SATURATION:
        return 0.0
    return 1 / (1 + math.exp(-x))


def wallet_weight(follow_score: float | None, alphaz: float | None) -> float:
    """Reliability weight of a wallet, in [0.0001, 1]."""
    fs = min(1.0, max(0.01, (follow_score or 0.0) / 100))
    az = min(1.0, max(0.01, ((alphaz or 0.0) + 1) / 6))
    return fs * az


def pressure(yes: float, no: float, eps: float) -> float:
    return (yes - no) / (abs(yes) + abs(no) + eps)


@dataclass
class MarketQuote:
    """What the model needs to know about the market itself."""

    condition_id: str
    outcomes: list[str]
    outcome_prices: list[float] | None = None
    token_yes_price: float | None = None

    @property
    def yes_index(self) -> int:
        return _find_outcome(self.outcomes, "yes", 0)

    @property
    def no_index(self) -> int:
        return _find_outcome(self.outcomes, "no", 1)

    def p_mkt_yes(self) -> float:
        """Quoted YES price, falling back to the token quote, then 0.5."""
        if self.outcome_prices and len(self.outcome_prices) > self.yes_index:
            p = self.outcome_prices[self.yes_index]
            if p is not None and 0 < p < 1:
                return float(p)
        if self.token_yes_price is not None and 0 < self.token_yes_price < 1:
            return float(self.token_yes_price)
        return 0.5


def _find_outcome(outcomes: list[str], name: str, default: int) -> int:
    for i, outcome in enumerate(outcomes):
        if outcome.lower() == name:
            return i
    return default


@dataclass
class PositionInput:
    """One non-zero ledger row in the market, joined with the wallet profile."""

    wallet: str
    outcome_index: int
    net_shares: float
    follow_score: float = 0.0
    alphaz: float = 0.0
    last_trade_at: datetime | None = None

    @property
    def weight(self) -> float:
        return wallet_weight(self.follow_score, self.alphaz)


@dataclass
class FlowInput:
    """One recent trade in the market, joined with the wallet profile."""

    wallet: str
    outcome_index: int
    side: str
    price: float
    size: float
    ts: datetime
    follow_score: float = 0.0
    alphaz: float = 0.0

    @property
    def cost(self) -> float:
        return self.price * self.size

    @property
    def weight(self) -> float:
        return wallet_weight(self.follow_score, self.alphaz)


class Driver(BaseModel):
    """One human-readable explanation of the estimate."""

    name: str
    value: float
    effect: str
    note: str


class TopWallet(BaseModel):
    """A wallet ranked by its weighted position in the market."""

    wallet: str
    follow_score: float
    alphaz: float
    weight: float
    side: str
    net_shares: float
    flow_cost_window: float
    last_trade_at: datetime | None = None


@dataclass
class AdviceResult:
    """Model output for one market."""

    condition_id: str
    p_mkt_yes: float
    p_model_yes: float
    confidence: int
    p_low: float
    p_high: float
    pos_pressure: float
    flow_pressure: float
    net_yes_shares: float
    net_no_shares: float
    flow_yes_cost: float
    flow_no_cost: float
    hedge_agreement: float
    evidence_strength: float
    top_drivers: list[Driver] = field(default_factory=list)
    top_wallets: list[TopWallet] = field(default_factory=list)

    @property
    def p_model_no(self) -> float:
        return 1 - self.p_model_yes

    @property
    def edge(self) -> float:
        return self.p_model_yes - self.p_mkt_yes

    @property
    def recommended_side(self) -> str:
        return "YES" if self.p_model_yes >= 0.5 else "NO"

    @property
    def recommended_prob(self) -> float:
        return max(self.p_model_yes, self.p_model_no)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["top_drivers"] = [d.model_dump() for d in self.top_drivers]
        data["top_wallets"] = [w.model_dump(mode="json") for w in self.top_wallets]
        data.update(
            p_model_no=self.p_model_no,
            edge=self.edge,
            recommended_side=self.recommended_side,
            recommended_prob=self.recommended_prob,
        )
        return data


def _effect(value: float) -> str:
    if value > EFFECT_THRESHOLD:
        return "pushes YES"
    if value < -EFFECT_THRESHOLD:
        return "pushes NO"
    return "neutral"


def _agreement_label(agreement: float) -> str:
    if agreement > 0.7:
        return "high agreement"
    if agreement > 0.4:
        return "medium agreement"
    return "low agreement"


def _evidence_label(strength: float) -> str:
    if strength > 0.5:
        return "good evidence"
    if strength > 0.2:
        return "moderate evidence"
    return "little evidence"


class AdviceModel:
    """Blend market price with wallet signals for a single binary market."""

    def __init__(self, config: AdviceConfig | None = None):
        self.config = config or AdviceConfig()

    def decay(self, ts: datetime, now: datetime) -> float:
        hours_ago = max(0.0, (now - ts).total_seconds() / 3600)
        return math.exp(-math.log(2) * hours_ago / self.config.half_life_hours)

    def compute(
        self,
        quote: MarketQuote,
        positions: list[PositionInput],
        flows: list[FlowInput],
        now: datetime,
    ) -> AdviceResult | None:
        """
        Run the model. Returns None for markets that are not binary.

        positions should hold the market's non-zero ledger rows; flows the
        market's trades, of which only those inside the look-back window
        are used.
        """
        if len(quote.outcomes) != 2:
            return None

        cfg = self.config
        yes_idx, no_idx = quote.yes_index, quote.no_index
        p_mkt_yes = quote.p_mkt_yes()

        # Position pressure
        weighted_shares: dict[int, float] = defaultdict(float)
        raw_shares: dict[int, float] = defaultdict(float)
        holders: dict[int, set[str]] = defaultdict(set)
        outcomes_by_wallet: dict[str, set[int]] = defaultdict(set)
        for pos in positions:
            if pos.net_shares == 0:
                continue
            weighted_shares[pos.outcome_index] += pos.net_shares * pos.weight
            raw_shares[pos.outcome_index] += abs(pos.net_shares)
            holders[pos.outcome_index].add(pos.wallet)
            outcomes_by_wallet[pos.wallet].add(pos.outcome_index)

        net_yes_shares = weighted_shares[yes_idx]
        net_no_shares = weighted_shares[no_idx]
        pos_pressure = pressure(net_yes_shares, net_no_shares, cfg.eps)
        pos_wallet_count = sum(len(w) for w in holders.values())

        # Flow pressure
        window_start = now - timedelta(hours=cfg.window_hours)
        weighted_flow: dict[int, float] = defaultdict(float)
        flow_wallets: dict[int, set[str]] = defaultdict(set)
        flow_by_wallet: dict[tuple[str, int], float] = defaultdict(float)
        for flow in flows:
            if flow.ts < window_start:
                continue
            sign = 1.0 if flow.side == "BUY" else -1.0
            weighted_flow[flow.outcome_index] += (
                sign * flow.cost * self.decay(flow.ts, now) * flow.weight
            )
            flow_wallets[flow.outcome_index].add(flow.wallet)
            flow_by_wallet[(flow.wallet, flow.outcome_index)] += sign * flow.cost

        flow_yes_cost = weighted_flow[yes_idx]
        flow_no_cost = weighted_flow[no_idx]
        flow_pressure = pressure(flow_yes_cost, flow_no_cost, cfg.eps)
        flow_wallet_count = sum(len(w) for w in flow_wallets.values())

        # Hedge agreement
        hedged = sum(1 for outcomes in outcomes_by_wallet.values() if len(outcomes) >= 2)
        total_holders = max(len(outcomes_by_wallet), 1)
        hedge_ratio = hedged / total_holders
        agreement = 1 - min(1.0, hedge_ratio)

        # Blend
        p_model_yes = sigmoid(
            logit(p_mkt_yes) + cfg.k_pos * pos_pressure + cfg.k_flow * flow_pressure
        )

        # Confidence
        total_cost = abs(flow_yes_cost) + abs(flow_no_cost)
        total_shares = abs(net_yes_shares) + abs(net_no_shares)
        flow_evidence = min(1.0, math.log(1 + total_cost) / math.log(1 + FLOW_SATURATION_COST))
        pos_evidence = min(
            1.0, math.log(1 + total_shares) / math.log(1 + POSITION_SATURATION_SHARES)
        )
        evidence_strength = max(flow_evidence, pos_evidence)
        diversity = min(
            1.0, (pos_wallet_count + flow_wallet_count) / DIVERSITY_SATURATION_WALLETS
        )

        if total_cost < NEGLIGIBLE_EVIDENCE and total_shares < NEGLIGIBLE_EVIDENCE:
            confidence = cfg.default_confidence_no_data
        else:
            confidence = round(100 * evidence_strength * agreement * (0.5 + 0.5 * diversity))
            confidence = min(100, max(confidence, MIN_CONFIDENCE))

        spread = max(0.02, (1 - confidence / 100) * 0.15)

        drivers = [
            Driver(
                name=BASELINE_DRIVER,
                value=p_mkt_yes,
                effect="neutral",
                note=f"Current YES price is {p_mkt_yes * 100:.1f}%",
            ),
            Driver(
                name="Net position pressure",
                value=pos_pressure,
                effect=_effect(pos_pressure),
                note=(
                    f"{pos_wallet_count} wallets, weighted YES={net_yes_shares:.1f} / "
                    f"NO={net_no_shares:.1f} shares (raw {raw_shares[yes_idx]:.0f}/"
                    f"{raw_shares[no_idx]:.0f})"
                ),
            ),
            Driver(
                name=f"Recent flow ({cfg.window_hours:g}h)",
                value=flow_pressure,
                effect=_effect(flow_pressure),
                note=(
                    f"{flow_wallet_count} active wallets, net cost YES=${flow_yes_cost:.2f} / "
                    f"NO=${flow_no_cost:.2f}"
                ),
            ),
            Driver(
                name="Wallet agreement",
                value=agreement,
                effect=_agreement_label(agreement),
                note=f"{hedged}/{total_holders} wallets hedged ({hedge_ratio * 100:.0f}%)",
            ),
            Driver(
                name="Evidence strength",
                value=evidence_strength,
                effect=_evidence_label(evidence_strength),
                note=(
                    f"Weighted flow ${total_cost:.2f}, weighted shares {total_shares:.1f}, "
                    f"diversity {diversity * 100:.0f}%"
                ),
            ),
        ]

        return AdviceResult(
            condition_id=quote.condition_id,
            p_mkt_yes=p_mkt_yes,
            p_model_yes=p_model_yes,
            confidence=int(confidence),
            p_low=max(0.0, p_model_yes - spread),
            p_high=min(1.0, p_model_yes + spread),
            pos_pressure=pos_pressure,
            flow_pressure=flow_pressure,
            net_yes_shares=net_yes_shares,
            net_no_shares=net_no_shares,
            flow_yes_cost=flow_yes_cost,
            flow_no_cost=flow_no_cost,
            hedge_agreement=agreement,
            evidence_strength=evidence_strength,
            top_drivers=drivers,
            top_wallets=self.top_wallets(positions, flow_by_wallet, yes_idx),
        )

    @staticmethod
    def top_wallets(
        positions: list[PositionInput],
        flow_by_wallet: dict[tuple[str, int], float],
        yes_idx: int,
    ) -> list[TopWallet]:
        """Up to 10 holders ranked by |net_shares| x weight."""
        ranked = sorted(
            (p for p in positions if p.net_shares != 0),
            key=lambda p: abs(p.net_shares) * p.weight,
            reverse=True,
        )
        return [
            TopWallet(
                wallet=p.wallet,
                follow_score=p.follow_score,
                alphaz=p.alphaz,
                weight=round(p.weight, 3),
                side="YES" if p.outcome_index == yes_idx else "NO",
                net_shares=p.net_shares,
                flow_cost_window=flow_by_wallet.get((p.wallet, p.outcome_index), 0.0),
                last_trade_at=p.last_trade_at,
            )
            for p in ranked[:TOP_WALLETS]
        ]
