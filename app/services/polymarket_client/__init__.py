"""Polymarket API client module."""

from app.services.polymarket_client.api import (
    PolymarketAPIError,
    PolymarketClient,
    PolymarketErrorType,
)
from app.services.polymarket_client.normalize import (
    NormalizedMarket,
    NormalizedResolution,
    NormalizedTrade,
)
from app.services.polymarket_client.rate_limiter import PolymarketRateLimiter

__all__ = [
    "PolymarketClient",
    "PolymarketAPIError",
    "PolymarketErrorType",
    "PolymarketRateLimiter",
    "NormalizedMarket",
    "NormalizedTrade",
    "NormalizedResolution",
]
