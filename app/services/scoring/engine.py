"""Wallet scoring engine.

Measures how much better than the market a wallet does when it buys cheap
outcomes, and turns that into a reliability score.

For each price threshold t, a wallet's BUYs at 0 < price <= t on resolved
markets are Bernoulli trials with success probability equal to the price
paid. If the wallet has no edge, wins ~ expected_wins with variance
sum(p * (1 - p)), so

    alpha-Z = (wins - expected_wins) / sqrt(variance)

is a z-score: values above 2 indicate a statistically significant edge.

The profile score multiplies five factors in [0, 1]:

    follow_score = 100
      x clamp(n / 50, 0, 1)                 sample size
      x clamp((alphaZ + 1) / 6, 0, 1)       edge
      x (1 - hedge_rate)                    hedging penalty
      x (1 - 0.5 x late_sniping_rate)       lateness penalty
      x exp(-ln2 x days_since_last / 30)    recency decay
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from app.config.pipeline import ScoringConfig

logger = structlog.get_logger(__name__)


@dataclass
class CheapBuy:
    """A BUY at or below the widest threshold, on a market with a known winner."""

    wallet: str
    condition_id: str
    outcome_index: int
    price: float
    ts: datetime
    winning_outcome_index: int
    end_date: datetime | None = None

    @property
    def is_win(self) -> bool:
        return self.outcome_index == self.winning_outcome_index


@dataclass
class WalletStatsResult:
    """Per-wallet, per-threshold aggregates."""

    wallet: str
    threshold: float
    n: int
    wins: int
    expected_wins: float
    variance: float
    alphaz: float

    @property
    def is_significant(self) -> bool:
        return self.alphaz > 2.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "threshold": self.threshold,
            "n": self.n,
            "wins": self.wins,
            "expected_wins": self.expected_wins,
            "variance": self.variance,
            "alphaz": self.alphaz,
        }


@dataclass
class WalletProfileResult:
    """Composite reliability attributes of one wallet."""

    wallet: str
    follow_score: float
    is_followable: bool
    n_02: int
    alphaz_02: float
    hedge_rate: float
    late_sniping_rate: float
    last_trade_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "follow_score": self.follow_score,
            "is_followable": self.is_followable,
            "n_02": self.n_02,
            "alphaz_02": self.alphaz_02,
            "hedge_rate": self.hedge_rate,
            "late_sniping_rate": self.late_sniping_rate,
            "last_trade_at": self.last_trade_at,
        }


def alpha_z(wins: float, expected_wins: float, variance: float) -> float:
    """Binomial z-score. 0 when the variance is not positive (including n = 0)."""
    if variance <= 0:
        return 0.0
    return (wins - expected_wins) / math.sqrt(variance)


class WalletScoringEngine:
    """Compute wallet statistics and profiles from cheap BUY history."""

    def __init__(self, config: ScoringConfig | None = None):
        self.config = config or ScoringConfig()

    @staticmethod
    def clamp(value: float, min_val: float, max_val: float) -> float:
        """Clamp value between min and max."""
        return max(min_val, min(value, max_val))

    # =========================================================================
    # Stage 1: per-threshold aggregation
    # =========================================================================

    def compute_stats(self, buys: list[CheapBuy]) -> list[WalletStatsResult]:
        """
        Aggregate cheap BUYs into one row per (wallet, threshold).

        A wallet only gets a row for thresholds where it has at least one
        qualifying trade.
        """
        acc: dict[tuple[str, float], list[float]] = defaultdict(lambda: [0, 0, 0.0, 0.0])

        for buy in buys:
            if not (0 < buy.price <= self.config.widest_threshold):
                continue
            for threshold in self.config.thresholds:
                if buy.price > threshold:
                    continue
                row = acc[(buy.wallet, threshold)]
                row[0] += 1
                row[1] += 1 if buy.is_win else 0
                row[2] += buy.price
                row[3] += buy.price * (1 - buy.price)

        return [
            WalletStatsResult(
                wallet=wallet,
                threshold=threshold,
                n=int(n),
                wins=int(wins),
                expected_wins=expected,
                variance=variance,
                alphaz=alpha_z(wins, expected, variance),
            )
            for (wallet, threshold), (n, wins, expected, variance) in acc.items()
        ]

    # =========================================================================
    # Stage 2: profile synthesis
    # =========================================================================

    @staticmethod
    def hedge_rate(buys: list[CheapBuy]) -> float:
        """Fraction of the wallet's markets where it bought both outcomes."""
        outcomes_by_market: dict[str, set[int]] = defaultdict(set)
        for buy in buys:
            outcomes_by_market[buy.condition_id].add(buy.outcome_index)
        if not outcomes_by_market:
            return 0.0
        hedged = sum(1 for outcomes in outcomes_by_market.values() if len(outcomes) >= 2)
        return hedged / len(outcomes_by_market)

    def late_sniping_rate(self, buys: list[CheapBuy]) -> float:
        """Fraction of trades placed within the late window before market close."""
        if not buys:
            return 0.0
        window_seconds = self.config.late_window_hours * 3600
        late = 0
        for buy in buys:
            if buy.end_date is None:
                continue
            before_close = (buy.end_date - buy.ts).total_seconds()
            if 0 <= before_close <= window_seconds:
                late += 1
        return late / len(buys)

    def recency_factor(self, last_trade_at: datetime | None, now: datetime) -> float:
        """Exponential decay by days since the last trade. 0 when never traded."""
        if last_trade_at is None:
            return 0.0
        days = max(0.0, (now - last_trade_at).total_seconds() / 86400)
        return math.exp(-math.log(2) * days / self.config.recency_half_life_days)

    def follow_score(
        self,
        n: int,
        alphaz: float,
        hedge_rate: float,
        late_sniping_rate: float,
        recency: float,
    ) -> float:
        """Composite score in [0, 100], rounded to 2 decimals."""
        score = (
            100
            * self.clamp(n / self.config.sample_saturation, 0, 1)
            * self.clamp((alphaz + 1) / 6, 0, 1)
            * self.clamp(1 - hedge_rate, 0, 1)
            * self.clamp(1 - 0.5 * late_sniping_rate, 0, 1)
            * self.clamp(recency, 0, 1)
        )
        return round(self.clamp(score, 0, 100), 2)

    def is_followable(
        self,
        n: int,
        alphaz: float,
        hedge_rate: float,
        late_sniping_rate: float,
    ) -> bool:
        """Hard gate, independent of the continuous score."""
        return (
            n >= self.config.min_sample_for_follow
            and alphaz > 0
            and hedge_rate <= self.config.hedge_rate_max
            and late_sniping_rate <= self.config.late_rate_max
        )

    def compute_profiles(
        self,
        buys: list[CheapBuy],
        stats: list[WalletStatsResult],
        last_buy_at: dict[str, datetime],
        now: datetime,
    ) -> list[WalletProfileResult]:
        """
        Build one profile per wallet with cheap BUYs.

        n and alpha-Z come from the profile threshold (0.02 by default);
        hedge and late-sniping rates use the widest threshold's trade set.
        last_buy_at maps wallet -> latest BUY across all of its trades.
        """
        profile_stats = {
            s.wallet: s for s in stats if s.threshold == self.config.profile_threshold
        }
        by_wallet: dict[str, list[CheapBuy]] = defaultdict(list)
        for buy in buys:
            if 0 < buy.price <= self.config.widest_threshold:
                by_wallet[buy.wallet].append(buy)

        profiles = []
        for wallet, wallet_buys in by_wallet.items():
            s = profile_stats.get(wallet)
            n = s.n if s else 0
            az = s.alphaz if s else 0.0
            hedge = self.hedge_rate(wallet_buys)
            late = self.late_sniping_rate(wallet_buys)
            last_trade_at = last_buy_at.get(wallet) or max(b.ts for b in wallet_buys)

            profiles.append(
                WalletProfileResult(
                    wallet=wallet,
                    follow_score=self.follow_score(
                        n, az, hedge, late, self.recency_factor(last_trade_at, now)
                    ),
                    is_followable=self.is_followable(n, az, hedge, late),
                    n_02=n,
                    alphaz_02=az,
                    hedge_rate=hedge,
                    late_sniping_rate=late,
                    last_trade_at=last_trade_at,
                )
            )

        logger.debug(
            "profiles_computed",
            wallets=len(profiles),
            followable=sum(1 for p in profiles if p.is_followable),
        )
        return profiles
