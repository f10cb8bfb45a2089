"""Per-item results for batch loops.

A batch loop (markets to resolve, cursors to drain, wallets to refresh,
prices to quote) records one ItemResult per unit of work instead of
catching and logging ad hoc. BatchSummary folds them into the counters
reported in job summaries.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class ItemOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ItemResult:
    """Outcome of one unit of work in a batch."""

    key: str
    outcome: ItemOutcome
    reason: str | None = None
    count: int = 0

    @classmethod
    def success(cls, key: str, count: int = 0) -> "ItemResult":
        return cls(key, ItemOutcome.SUCCESS, count=count)

    @classmethod
    def skipped(cls, key: str, reason: str) -> "ItemResult":
        return cls(key, ItemOutcome.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, key: str, reason: str) -> "ItemResult":
        return cls(key, ItemOutcome.FAILED, reason=reason)


@dataclass
class BatchSummary:
    """Aggregated counters over a batch of ItemResults."""

    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    items_written: int = 0
    failures: list[ItemResult] = field(default_factory=list)

    def add(self, result: ItemResult) -> ItemResult:
        self.attempted += 1
        if result.outcome == ItemOutcome.SUCCESS:
            self.succeeded += 1
            self.items_written += result.count
        elif result.outcome == ItemOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.failures.append(result)
        return result

    def to_dict(self, max_failures: int = 5) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "errors": self.failed,
            "written": self.items_written,
            "failures": [
                {"key": r.key, "reason": r.reason} for r in self.failures[:max_failures]
            ],
        }


async def run_item(
    key: str,
    work: Callable[[], Awaitable[ItemResult]],
    event: str,
    **log_context: Any,
) -> ItemResult:
    """
    Run one unit of work, converting an exception into a FAILED result.

    The failure is logged under `event` with the item key and context.
    """
    try:
        return await work()
    except Exception as e:
        logger.warning(event, key=key, error=str(e), **log_context)
        return ItemResult.failed(key, str(e))
