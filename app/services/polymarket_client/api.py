"""Polymarket API client.

Provides async access to the three public Polymarket APIs with:
- Rate limiting (shared Redis token bucket)
- Retry with exponential backoff and jitter on 429 / 5xx / timeouts
- Error classification

Gamma serves market listings, the Data API serves trade history, and the
CLOB serves resolutions and price quotes.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx
import redis.asyncio as redis
import structlog

from app.config import Settings, get_settings
from app.models.domain import OutcomePair
from app.services.polymarket_client.normalize import (
    NormalizedMarket,
    NormalizedResolution,
    NormalizedTrade,
    normalize_market,
    normalize_resolution,
    normalize_trades,
)
from app.services.polymarket_client.rate_limiter import PolymarketRateLimiter
from app.services.polymarket_client.retry import (
    BackoffPolicy,
    exponential_backoff,
    retry_call,
)

logger = structlog.get_logger(__name__)

PRICE_MAX_RETRIES = 2
PRICE_TIMEOUT_SECONDS = 5.0


class PolymarketErrorType(Enum):
    """Classification of upstream failures."""

    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    CONNECTION = "CONNECTION"
    NOT_FOUND = "NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    UNKNOWN = "UNKNOWN"


RETRYABLE_ERRORS = {
    PolymarketErrorType.RATE_LIMITED,
    PolymarketErrorType.SERVICE_UNAVAILABLE,
    PolymarketErrorType.TIMEOUT,
    PolymarketErrorType.CONNECTION,
}


class PolymarketAPIError(Exception):
    """Polymarket API error with classification."""

    def __init__(
        self,
        message: str,
        error_type: PolymarketErrorType,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.retryable = retryable
        self.status_code = status_code


def classify_status(status_code: int) -> PolymarketErrorType:
    """Map an HTTP status to an error type."""
    if status_code == 429:
        return PolymarketErrorType.RATE_LIMITED
    if status_code >= 500:
        return PolymarketErrorType.SERVICE_UNAVAILABLE
    if status_code == 404:
        return PolymarketErrorType.NOT_FOUND
    if 400 <= status_code < 500:
        return PolymarketErrorType.INVALID_INPUT
    return PolymarketErrorType.UNKNOWN


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, PolymarketAPIError) and error.retryable


class PolymarketClient:
    """
    Polymarket public API client.

    Use as an async context manager so the underlying HTTP connection pool
    is closed when the job finishes.
    """

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        rate_limiter: PolymarketRateLimiter | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff: BackoffPolicy = exponential_backoff,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize Polymarket client.

        Args:
            redis_client: Redis client for distributed rate limiting
            rate_limiter: Optional custom rate limiter
            settings: Optional settings override
            transport: Optional httpx transport (tests use MockTransport)
            backoff: Retry delay policy, attempt -> seconds
            sleep: Coroutine used to wait between retries
        """
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter or (
            PolymarketRateLimiter(
                redis_client,
                rate=self.settings.rate_limit_per_second,
                burst=self.settings.rate_limit_burst,
            )
            if redis_client
            else None
        )
        self.backoff = backoff
        self.sleep = sleep
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "PolymarketClient":
        await self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def _get_once(
        self,
        api: str,
        url: str,
        params: dict[str, Any] | None,
        timeout: float | None,
    ) -> Any:
        if self.rate_limiter:
            await self.rate_limiter.wait_if_needed(api)

        client = await self._get_client()
        try:
            response = await client.get(
                url,
                params=params,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            raise PolymarketAPIError(
                f"Timeout calling {url}", PolymarketErrorType.TIMEOUT, retryable=True
            ) from e
        except httpx.TransportError as e:
            raise PolymarketAPIError(
                f"Connection error calling {url}: {e}",
                PolymarketErrorType.CONNECTION,
                retryable=True,
            ) from e

        if response.status_code >= 400:
            error_type = classify_status(response.status_code)
            raise PolymarketAPIError(
                f"HTTP {response.status_code} {response.reason_phrase} - {url}",
                error_type,
                retryable=error_type in RETRYABLE_ERRORS,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise PolymarketAPIError(
                f"Invalid JSON from {url}", PolymarketErrorType.INVALID_RESPONSE
            ) from e

    async def _get(
        self,
        api: str,
        url: str,
        params: dict[str, Any] | None = None,
        max_retries: int | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        GET a JSON document with rate limiting and retry.

        Raises:
            PolymarketAPIError: If the request fails after retries
        """
        return await retry_call(
            lambda: self._get_once(api, url, params, timeout),
            max_retries=self.settings.http_max_retries if max_retries is None else max_retries,
            is_retryable=_is_retryable,
            backoff=self.backoff,
            sleep=self.sleep,
            label=api,
        )

    # =========================================================================
    # Gamma: market listings
    # =========================================================================

    async def fetch_markets_page(
        self,
        limit: int = 500,
        offset: int = 0,
        closed: bool | None = None,
    ) -> tuple[int, list[NormalizedMarket]]:
        """
        Fetch one page of market listings.

        Returns:
            (raw record count, binary markets on the page). The raw count
            drives pagination; non-binary markets are dropped.
        """
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if closed is not None:
            params["closed"] = "true" if closed else "false"

        raw = await self._get("gamma", f"{self.settings.polymarket_gamma_url}/markets", params)
        if not isinstance(raw, list):
            raise PolymarketAPIError(
                "Expected a list of markets", PolymarketErrorType.INVALID_RESPONSE
            )

        markets = [m for m in (normalize_market(r) for r in raw) if m is not None]
        logger.debug(
            "markets_page_fetched",
            offset=offset,
            fetched=len(raw),
            binary=len(markets),
            closed=closed,
        )
        return len(raw), markets

    # =========================================================================
    # Data API: trade history
    # =========================================================================

    async def _fetch_trades(self, params: dict[str, Any]) -> tuple[int, list[NormalizedTrade]]:
        raw = await self._get("data", f"{self.settings.polymarket_data_api_url}/trades", params)
        if not isinstance(raw, list):
            raise PolymarketAPIError(
                "Expected a list of trades", PolymarketErrorType.INVALID_RESPONSE
            )
        return len(raw), normalize_trades(raw)

    async def fetch_trades_page(
        self,
        condition_id: str,
        limit: int = 500,
        offset: int = 0,
        side: str = "BUY",
    ) -> tuple[int, list[NormalizedTrade]]:
        """Fetch one page of a market's trades. Returns (raw count, trades)."""
        return await self._fetch_trades(
            {"market": condition_id, "limit": limit, "offset": offset, "side": side}
        )

    async def fetch_user_trades_page(
        self,
        wallet: str,
        limit: int = 200,
        offset: int = 0,
        side: str = "BUY",
    ) -> tuple[int, list[NormalizedTrade]]:
        """Fetch one page of a wallet's trades. Returns (raw count, trades)."""
        return await self._fetch_trades(
            {"user": wallet, "limit": limit, "offset": offset, "side": side}
        )

    # =========================================================================
    # CLOB: resolutions and prices
    # =========================================================================

    async def fetch_market_winner(
        self,
        condition_id: str,
        token_ids: OutcomePair | None,
    ) -> NormalizedResolution | None:
        """
        Look up the winning token of a market.

        Returns None when the market has no winner yet.
        """
        raw = await self._get("clob", f"{self.settings.polymarket_clob_url}/markets/{condition_id}")
        if not isinstance(raw, dict):
            raise PolymarketAPIError(
                "Expected a market object", PolymarketErrorType.INVALID_RESPONSE
            )
        return normalize_resolution(condition_id, raw, token_ids)

    async def fetch_token_price(self, token_id: str) -> float | None:
        """Current buy-side quote for an outcome token, or None if unavailable."""
        raw = await self._get(
            "clob",
            f"{self.settings.polymarket_clob_url}/price",
            {"token_id": token_id, "side": "buy"},
            max_retries=PRICE_MAX_RETRIES,
            timeout=PRICE_TIMEOUT_SECONDS,
        )
        price = raw.get("price") if isinstance(raw, dict) else None
        if price is None:
            return None
        try:
            return float(price)
        except (TypeError, ValueError):
            return None
