"""Database models for Sharpline."""

from app.models.base import Base, Database, task_database
from app.models.domain import (
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

__all__ = [
    # Base
    "Base",
    "Database",
    "task_database",
    # Domain models
    "OutcomePair",
    "Market",
    "Resolution",
    "Trade",
    "WalletPosition",
    "WalletStats",
    "WalletProfile",
    "TradeBackfill",
    "EtlState",
    "EtlRun",
    "MarketAdvice",
    "WalletWatchlist",
    "WalletLiveCursor",
    "TokenPrice",
]
