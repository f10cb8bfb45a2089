"""Wallet leaderboard and detail endpoints."""

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.dependencies import get_store
from app.config import get_pipeline_config
from app.services.repository import SqlStore

router = APIRouter(prefix="/api", tags=["wallets"])

LeaderboardSort = Literal["followScore", "alphaz", "wins", "n"]


@router.get("/leaderboard")
async def leaderboard(
    threshold: float = Query(0.02),
    min_n: int = Query(20, ge=0, le=1000, alias="minN"),
    only_followable: bool = Query(False, alias="onlyFollowable"),
    sort: LeaderboardSort = Query("followScore"),
    limit: int = Query(100, ge=1, le=200),
    store: SqlStore = Depends(get_store),
) -> dict[str, Any]:
    """Wallet profiles joined with their statistics at one price threshold."""
    thresholds = get_pipeline_config().scoring.thresholds
    if threshold not in thresholds:
        threshold = get_pipeline_config().scoring.profile_threshold

    rows = await store.leaderboard(
        threshold=threshold,
        min_n=min_n,
        sort=sort,
        limit=limit,
        followable_only=only_followable,
    )
    items = [
        {
            "wallet": profile.wallet,
            "followScore": profile.follow_score,
            "isFollowable": profile.is_followable,
            "n": stats.n if stats else 0,
            "wins": stats.wins if stats else 0,
            "expectedWins": stats.expected_wins if stats else 0.0,
            "variance": stats.variance if stats else 0.0,
            "alphaz": stats.alphaz if stats else 0.0,
            "hedgeRate": profile.hedge_rate,
            "lateSnipingRate": profile.late_sniping_rate,
            "lastTradeAt": profile.last_trade_at,
        }
        for profile, stats in rows
    ]
    updated_at = await store.get_state("last_compute_at", "")
    return {
        "ok": True,
        "updatedAt": updated_at or None,
        "threshold": threshold,
        "count": len(items),
        "items": items,
    }


@router.get("/wallets/{wallet}")
async def wallet_detail(wallet: str, store: SqlStore = Depends(get_store)) -> dict[str, Any]:
    """Profile, per-threshold statistics and open positions of one wallet."""
    detail = await store.wallet_detail(wallet.strip().lower())
    if detail is None:
        raise HTTPException(status_code=404, detail="Wallet not found")

    profile = detail["profile"]
    return {
        "ok": True,
        "wallet": wallet.strip().lower(),
        "profile": None
        if profile is None
        else {
            "followScore": profile.follow_score,
            "isFollowable": profile.is_followable,
            "n02": profile.n_02,
            "alphaz02": profile.alphaz_02,
            "hedgeRate": profile.hedge_rate,
            "lateSnipingRate": profile.late_sniping_rate,
            "lastTradeAt": profile.last_trade_at,
        },
        "stats": [
            {
                "threshold": s.threshold,
                "n": s.n,
                "wins": s.wins,
                "expectedWins": s.expected_wins,
                "variance": s.variance,
                "alphaz": s.alphaz,
            }
            for s in detail["stats"]
        ],
        "positions": [
            {
                "conditionId": p.condition_id,
                "outcomeIndex": p.outcome_index,
                "netShares": p.net_shares,
                "lastTradeAt": p.last_trade_at,
            }
            for p in detail["positions"]
        ],
    }
