"""Market advice endpoints."""

from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.dependencies import get_advice_service, get_store
from app.services.advice.service import AdviceService, advice_to_dict, main_driver
from app.services.repository import SqlStore

router = APIRouter(prefix="/api/markets", tags=["markets"])
logger = structlog.get_logger(__name__)

AdviceSort = Literal["confidence", "edge", "trend", "updated"]


@router.get("/advice")
async def list_advice(
    sort: AdviceSort = Query("confidence"),
    min_confidence: int = Query(0, ge=0, le=100, alias="minConfidence"),
    only_open: bool = Query(True, alias="onlyOpen"),
    limit: int = Query(50, ge=1, le=200),
    store: SqlStore = Depends(get_store),
) -> dict[str, Any]:
    """
    List cached advice.

    Sort by confidence, |edge|, |trend| or recency, with summary counts over
    all cached advice matching the open-only filter.
    """
    rows = await store.list_advice(
        sort=sort, min_confidence=min_confidence, only_open=only_open, limit=limit
    )
    stats = await store.advice_stats(only_open=only_open)

    markets = []
    for advice, market in rows:
        item = advice_to_dict(advice, market)
        item["mainDriver"] = main_driver(advice.top_drivers)
        for key in ("topDrivers", "topWallets"):
            item.pop(key)
        markets.append(item)

    return {
        "ok": True,
        "count": len(markets),
        "stats": {
            "total": stats["total"],
            "highConfidence": stats["high_confidence"],
            "strongEdge": stats["strong_edge"],
            "trendingYes": stats["trending_yes"],
            "trendingNo": stats["trending_no"],
            "avgConfidence": stats["avg_confidence"],
            "avgAbsEdge": stats["avg_abs_edge"],
        },
        "markets": markets,
    }


@router.get("/{condition_id}/advice")
async def get_market_advice(
    condition_id: str,
    service: AdviceService = Depends(get_advice_service),
) -> dict[str, Any]:
    """Cached advice if fresh, otherwise computed on demand and cached."""
    if len(condition_id) < 10:
        raise HTTPException(status_code=400, detail="Invalid condition id")

    result = await service.get_advice(condition_id)
    if result is None:
        raise HTTPException(
            status_code=404,
            detail="Market not found or not binary (only YES/NO markets supported)",
        )
    return {
        "ok": True,
        "source": result.source,
        "advice": advice_to_dict(result.advice, result.market),
    }
