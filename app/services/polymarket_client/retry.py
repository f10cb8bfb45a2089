"""Backoff policy for transient upstream failures.

The policy is a plain function from attempt number to delay, so it can be
reasoned about and tested without any I/O. `retry_call` composes it with a
bounded retry count around an arbitrary coroutine.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

BASE_DELAY_SECONDS = 0.5
MAX_JITTER_SECONDS = 0.3

BackoffPolicy = Callable[[int], float]


def exponential_backoff(
    attempt: int,
    base: float = BASE_DELAY_SECONDS,
    max_jitter: float = MAX_JITTER_SECONDS,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number `attempt` (0-based).

    delay = base * 2^attempt + U(0, max_jitter)
    """
    return base * (2**attempt) + rng() * max_jitter


def no_backoff(attempt: int) -> float:
    return 0.0


async def retry_call(
    call: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    is_retryable: Callable[[Exception], bool],
    backoff: BackoffPolicy = exponential_backoff,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "call",
) -> T:
    """
    Invoke `call`, retrying retryable failures up to `max_retries` times.

    Non-retryable errors, and the last retryable one, are raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except Exception as e:
            if attempt >= max_retries or not is_retryable(e):
                raise
            delay = backoff(attempt)
            logger.warning(
                "upstream_retrying",
                label=label,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)
            attempt += 1
