"""Wallet scoring."""

from app.services.scoring.engine import (
    CheapBuy,
    WalletProfileResult,
    WalletScoringEngine,
    WalletStatsResult,
    alpha_z,
)

__all__ = [
    "CheapBuy",
    "WalletProfileResult",
    "WalletScoringEngine",
    "WalletStatsResult",
    "alpha_z",
]
