"""Unit tests for the Polymarket client retry and parsing behaviour."""

import httpx
import pytest

from app.config import Settings
from app.models.domain import OutcomePair
from app.services.polymarket_client import (
    PolymarketAPIError,
    PolymarketClient,
    PolymarketErrorType,
)
from app.services.polymarket_client.retry import exponential_backoff, no_backoff


class Responder:
    """MockTransport handler replaying a script of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_client(responder: Responder, sleeps: list[float]) -> PolymarketClient:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return PolymarketClient(
        settings=Settings(http_max_retries=3),
        transport=httpx.MockTransport(responder),
        backoff=no_backoff,
        sleep=fake_sleep,
    )


class TestBackoff:
    """Test the backoff policy."""

    def test_exponential_growth_with_jitter(self):
        """delay = 0.5 * 2^attempt + U(0, 0.3)."""
        assert exponential_backoff(0, rng=lambda: 0.0) == 0.5
        assert exponential_backoff(2, rng=lambda: 0.0) == 2.0
        assert exponential_backoff(1, rng=lambda: 1.0) == pytest.approx(1.3)


class TestRetries:
    """Test which failures are retried."""

    async def test_retries_service_unavailable(self):
        """503 twice then 200: the call succeeds after two retries."""
        responder = Responder(
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(200, json=[]),
        )
        sleeps: list[float] = []
        async with make_client(responder, sleeps) as client:
            count, markets = await client.fetch_markets_page(limit=10)

        assert (count, markets) == (0, [])
        assert len(responder.requests) == 3
        assert len(sleeps) == 2

    async def test_retries_rate_limited_until_exhausted(self):
        """429 on every attempt: 1 + max_retries requests, then raise."""
        responder = Responder(httpx.Response(429))
        sleeps: list[float] = []
        async with make_client(responder, sleeps) as client:
            with pytest.raises(PolymarketAPIError) as exc_info:
                await client.fetch_markets_page(limit=10)

        assert exc_info.value.error_type == PolymarketErrorType.RATE_LIMITED
        assert exc_info.value.status_code == 429
        assert len(responder.requests) == 4

    async def test_not_found_not_retried(self):
        """404 fails immediately."""
        responder = Responder(httpx.Response(404))
        sleeps: list[float] = []
        async with make_client(responder, sleeps) as client:
            with pytest.raises(PolymarketAPIError) as exc_info:
                await client.fetch_market_winner("cid", None)

        assert exc_info.value.error_type == PolymarketErrorType.NOT_FOUND
        assert not exc_info.value.retryable
        assert len(responder.requests) == 1
        assert sleeps == []

    async def test_timeout_is_retryable(self):
        """Timeouts are classified and retried."""
        responder = Responder(
            httpx.ReadTimeout("slow"),
            httpx.Response(200, json={"tokens": []}),
        )
        sleeps: list[float] = []
        async with make_client(responder, sleeps) as client:
            assert await client.fetch_market_winner("cid", None) is None
        assert len(responder.requests) == 2


class TestParsing:
    """Test response parsing."""

    async def test_markets_page_reports_raw_count(self):
        """Non-binary markets are dropped but still counted for paging."""
        responder = Responder(
            httpx.Response(
                200,
                json=[
                    {
                        "conditionId": "0xabc123def456",
                        "outcomes": '["Yes", "No"]',
                        "clobTokenIds": '["1", "2"]',
                    },
                    {
                        "conditionId": "0xfff123def456",
                        "outcomes": '["A", "B", "C"]',
                        "clobTokenIds": '["1", "2", "3"]',
                    },
                ],
            )
        )
        async with make_client(responder, []) as client:
            count, markets = await client.fetch_markets_page(limit=2, offset=40, closed=True)

        assert count == 2
        assert [m.condition_id for m in markets] == ["0xabc123def456"]
        params = responder.requests[0].url.params
        assert params["offset"] == "40"
        assert params["closed"] == "true"

    async def test_winner_lookup(self):
        responder = Responder(
            httpx.Response(
                200,
                json={"tokens": [{"token_id": "1", "winner": True}, {"token_id": "2"}]},
            )
        )
        async with make_client(responder, []) as client:
            resolution = await client.fetch_market_winner("cid", OutcomePair("1", "2"))
        assert resolution.winning_outcome_index == 0

    async def test_token_price(self):
        """Price quotes arrive as strings."""
        responder = Responder(httpx.Response(200, json={"price": "0.42"}))
        async with make_client(responder, []) as client:
            assert await client.fetch_token_price("tok") == 0.42
        assert responder.requests[0].url.params["side"] == "buy"

    async def test_token_price_missing(self):
        responder = Responder(httpx.Response(200, json={}))
        async with make_client(responder, []) as client:
            assert await client.fetch_token_price("tok") is None

    async def test_invalid_trades_payload(self):
        """A non-list trades payload is an invalid response."""
        responder = Responder(httpx.Response(200, json={"error": "nope"}))
        async with make_client(responder, []) as client:
            with pytest.raises(PolymarketAPIError) as exc_info:
                await client.fetch_trades_page("cid")
        assert exc_info.value.error_type == PolymarketErrorType.INVALID_RESPONSE
