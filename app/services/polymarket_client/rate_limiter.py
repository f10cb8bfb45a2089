"""Rate limiter for outbound Polymarket requests.

Token bucket held in Redis so every worker process shares the same budget
per upstream API (gamma, data, clob).
"""

import asyncio
import time

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

# Atomically refill and take one token.
# Returns {acquired, wait_seconds}.
TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local rate = tonumber(ARGV[1])
local burst = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local state = redis.call('HMGET', key, 'tokens', 'last_update')
local tokens = tonumber(state[1]) or burst
local last_update = tonumber(state[2]) or now

tokens = math.min(burst, tokens + (now - last_update) * rate)

if tokens >= 1 then
    redis.call('HMSET', key, 'tokens', tokens - 1, 'last_update', now)
    redis.call('EXPIRE', key, 60)
    return {1, '0'}
end
redis.call('HMSET', key, 'tokens', tokens, 'last_update', now)
redis.call('EXPIRE', key, 60)
return {0, tostring((1 - tokens) / rate)}
"""


class PolymarketRateLimiter:
    """Distributed token bucket, one bucket per upstream API."""

    def __init__(
        self,
        redis_client: redis.Redis,
        rate: float = 8.0,
        burst: int = 16,
        key_prefix: str = "ratelimit:polymarket",
        max_wait: float = 10.0,
    ):
        self.redis = redis_client
        self.rate = rate
        self.burst = burst
        self.key_prefix = key_prefix
        self.max_wait = max_wait

    def _get_key(self, api: str) -> str:
        return f"{self.key_prefix}:{api}"

    async def acquire(self, api: str = "default") -> tuple[bool, float]:
        """
        Try to take a token.

        Returns (acquired, seconds until the next token). Fails open when
        Redis is unreachable; the limiter is a courtesy, not a correctness
        requirement.
        """
        try:
            acquired, wait = await self.redis.eval(
                TOKEN_BUCKET_LUA,
                1,
                self._get_key(api),
                str(self.rate),
                str(self.burst),
                str(time.time()),
            )
        except redis.RedisError as e:
            logger.error("rate_limiter_error", api=api, error=str(e))
            return True, 0.0
        return int(acquired) == 1, float(wait)

    async def wait_if_needed(self, api: str = "default") -> None:
        """Block until a token is available or max_wait is exhausted."""
        total_wait = 0.0
        while True:
            acquired, wait = await self.acquire(api)
            if acquired:
                return
            if total_wait >= self.max_wait:
                logger.warning("rate_limiter_max_wait_exceeded", api=api, total_wait=total_wait)
                return
            wait = min(max(wait, 0.01), self.max_wait - total_wait)
            await asyncio.sleep(wait)
            total_wait += wait
