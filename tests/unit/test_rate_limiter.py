"""Unit tests for the Redis token bucket."""

from unittest.mock import AsyncMock, MagicMock

import redis.asyncio as redis

from app.services.polymarket_client import PolymarketRateLimiter


def limiter_with(*eval_results):
    client = MagicMock()
    client.eval = AsyncMock(side_effect=list(eval_results))
    return PolymarketRateLimiter(client, rate=8.0, burst=16, max_wait=1.0), client


class TestRateLimiter:
    """Test token acquisition against a mocked Redis."""

    async def test_acquire(self):
        limiter, client = limiter_with([1, "0"])

        assert await limiter.acquire("gamma") == (True, 0.0)
        args = client.eval.await_args.args
        assert args[2] == "ratelimit:polymarket:gamma"
        assert args[3:5] == ("8.0", "16")

    async def test_empty_bucket_reports_wait(self):
        limiter, _ = limiter_with([0, "0.125"])
        assert await limiter.acquire("data") == (False, 0.125)

    async def test_fails_open_without_redis(self):
        """An unreachable Redis must not block upstream calls."""
        limiter, _ = limiter_with(redis.ConnectionError("down"))
        assert await limiter.acquire("clob") == (True, 0.0)

    async def test_wait_until_token(self):
        limiter, client = limiter_with([0, "0.01"], [1, "0"])

        await limiter.wait_if_needed("clob")
        assert client.eval.await_count == 2
