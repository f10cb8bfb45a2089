"""Position ledger.

net_shares per (wallet, market, outcome) = sum(BUY.size) - sum(SELL.size)
over every trade applied so far. Applying a trade twice double-counts it,
so callers must pass exactly the trades the store reported as newly
inserted.
"""

from typing import Protocol

import structlog

from app.services.polymarket_client.normalize import NormalizedTrade

logger = structlog.get_logger(__name__)

NEAR_ZERO = 1e-9


class PositionStore(Protocol):
    async def add_position_deltas(self, trades: list[NormalizedTrade]) -> int: ...

    async def clamp_near_zero_positions(self, tolerance: float = NEAR_ZERO) -> int: ...


class PositionLedger:
    """Apply newly inserted trades to wallet positions."""

    def __init__(self, store: PositionStore):
        self.store = store

    async def apply_inserted_trades(self, trades: list[NormalizedTrade]) -> int:
        """
        Accumulate +size for BUY and -size for SELL into each position.

        Trades without an outcome index are ignored. Residues below 1e-9
        are clamped to exactly zero afterwards.

        Returns:
            Number of position rows written
        """
        applicable = [t for t in trades if t.outcome_index is not None and t.size is not None]
        if not applicable:
            return 0

        updated = await self.store.add_position_deltas(applicable)
        clamped = await self.store.clamp_near_zero_positions(NEAR_ZERO)
        logger.debug(
            "positions_applied",
            trades=len(applicable),
            rows=updated,
            clamped=clamped,
        )
        return updated
