"""Normalisation of raw Polymarket payloads.

Gamma, the Data API and the CLOB each spell their fields a little
differently (camelCase vs snake_case, JSON-encoded lists, unix seconds vs
ISO timestamps). Everything downstream of this module works with the
dataclasses defined here.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from app.models.domain import OutcomePair

logger = structlog.get_logger(__name__)


@dataclass
class NormalizedMarket:
    """Binary market listing."""

    condition_id: str
    question: str
    slug: str
    event_slug: str | None
    group_item_title: str | None
    end_date: datetime | None
    closed: bool
    outcomes: OutcomePair
    clob_token_ids: OutcomePair
    outcome_prices: list[float] | None = None


@dataclass
class NormalizedTrade:
    """Single fill, keyed by its content hash."""

    pk: str
    ts: datetime
    wallet: str
    condition_id: str
    side: str
    price: float
    size: float
    outcome: str | None = None
    outcome_index: int | None = None
    asset: str | None = None
    tx_hash: str | None = None

    @property
    def signed_size(self) -> float:
        return self.size if self.side == "BUY" else -self.size


@dataclass
class NormalizedResolution:
    """Winning token of a resolved market."""

    condition_id: str
    winning_token_id: str
    winning_outcome_index: int | None


def _decode_list(value: Any) -> Any:
    """Lists sometimes arrive JSON-encoded as strings."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _hash_part(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _iso_millis(ts: datetime) -> str:
    """Canonical timestamp text used in the trade hash."""
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def trade_pk(
    tx_hash: str | None,
    condition_id: str,
    ts: datetime,
    wallet: str,
    side: str,
    price: float | None,
    size: float | None,
    outcome_index: int | None,
) -> str:
    """
    Content hash identifying a trade.

    Missing parts hash as the empty string, so the same fill delivered twice
    (by backfill and by live refresh, say) always yields the same key.
    """
    digest = hashlib.sha256()
    for part in (
        tx_hash,
        condition_id,
        _iso_millis(ts),
        wallet,
        side,
        price,
        size,
        outcome_index,
    ):
        digest.update(_hash_part(part).encode("utf-8"))
    return digest.hexdigest()


def normalize_market(raw: dict[str, Any]) -> NormalizedMarket | None:
    """
    Normalise a Gamma market listing.

    Returns None for markets that are not strictly binary or whose outcome
    and token lists cannot be decoded.
    """
    condition_id = raw.get("conditionId") or raw.get("condition_id") or ""
    if not condition_id:
        return None

    try:
        outcomes = OutcomePair.parse(_decode_list(raw.get("outcomes")))
        token_ids = OutcomePair.parse(
            _decode_list(raw.get("clobTokenIds") or raw.get("clob_token_ids") or [])
        )
    except (ValueError, TypeError):
        return None

    outcome_prices = None
    try:
        prices = _decode_list(raw.get("outcomePrices"))
        if isinstance(prices, list) and len(prices) == 2:
            outcome_prices = [float(p) for p in prices]
    except (ValueError, TypeError):
        outcome_prices = None

    event_slug = None
    events = raw.get("events")
    if isinstance(events, list) and events and isinstance(events[0], dict):
        event_slug = events[0].get("slug") or None

    try:
        end_date = _parse_datetime(
            raw.get("endDateIso") or raw.get("end_date_iso") or raw.get("endDate")
        )
    except ValueError:
        end_date = None

    return NormalizedMarket(
        condition_id=condition_id,
        question=raw.get("question") or "",
        slug=raw.get("slug") or "",
        event_slug=event_slug,
        group_item_title=raw.get("groupItemTitle") or None,
        end_date=end_date,
        closed=bool(raw.get("closed")),
        outcomes=outcomes,
        clob_token_ids=token_ids,
        outcome_prices=outcome_prices,
    )


def normalize_trade(raw: dict[str, Any]) -> NormalizedTrade | None:
    """
    Normalise a Data API trade.

    Returns None when a field required for storage (market, wallet,
    timestamp, side, price or size) is missing or malformed. Prices must lie
    strictly inside (0, 1) and sizes must be positive.
    """
    condition_id = raw.get("conditionId") or raw.get("market") or ""
    wallet = (raw.get("proxyWallet") or "").lower()
    side = (raw.get("side") or "").upper()
    price = _to_float(raw.get("price"))
    size = _to_float(raw.get("size"))
    outcome_index = _to_int(raw.get("outcomeIndex"))
    tx_hash = raw.get("transactionHash") or None

    try:
        ts = _parse_datetime(raw.get("timestamp"))
    except ValueError:
        ts = None

    if not condition_id or not wallet or ts is None:
        return None
    if side not in ("BUY", "SELL") or price is None or size is None:
        return None
    if not 0 < price < 1 or size <= 0:
        return None

    return NormalizedTrade(
        pk=trade_pk(tx_hash, condition_id, ts, wallet, side, price, size, outcome_index),
        ts=ts,
        wallet=wallet,
        condition_id=condition_id,
        side=side,
        price=price,
        size=size,
        outcome=raw.get("outcome") or None,
        outcome_index=outcome_index,
        asset=raw.get("asset") or None,
        tx_hash=tx_hash,
    )


def normalize_trades(raw_trades: list[dict[str, Any]]) -> list[NormalizedTrade]:
    """Normalise a page of trades, dropping malformed rows."""
    trades = []
    dropped = 0
    for raw in raw_trades:
        trade = normalize_trade(raw)
        if trade is None:
            dropped += 1
            continue
        trades.append(trade)
    if dropped:
        logger.debug("trades_dropped", dropped=dropped, kept=len(trades))
    return trades


def normalize_resolution(
    condition_id: str,
    clob_market: dict[str, Any],
    token_ids: OutcomePair | None,
) -> NormalizedResolution | None:
    """
    Extract the winner from a CLOB market payload.

    The winning outcome index is the position of the winning token in the
    market's stored token pair, or None when the pair does not contain it.
    """
    winner = next(
        (t for t in clob_market.get("tokens") or [] if t.get("winner") is True),
        None,
    )
    if winner is None or not winner.get("token_id"):
        return None

    winning_token_id = str(winner["token_id"])
    return NormalizedResolution(
        condition_id=condition_id,
        winning_token_id=winning_token_id,
        winning_outcome_index=token_ids.index_of(winning_token_id) if token_ids else None,
    )
