"""Market advice model."""

from app.services.advice.model import (
    AdviceModel,
    AdviceResult,
    Driver,
    FlowInput,
    MarketQuote,
    PositionInput,
    TopWallet,
)

__all__ = [
    "AdviceModel",
    "AdviceResult",
    "Driver",
    "FlowInput",
    "MarketQuote",
    "PositionInput",
    "TopWallet",
]
