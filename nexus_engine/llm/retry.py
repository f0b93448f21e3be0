"""Retry policy for idempotent, non-streaming provider calls."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from nexus_engine.config.models import RetryConfig
from .base import ServerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential delay for a zero-based attempt number, plus up to 100ms jitter."""
    delay = min(config.base_delay_seconds * (2 ** attempt), config.max_delay_seconds)
    return delay + random.uniform(0, 0.1)


async def with_retries(
    call: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    description: str = "LLM call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``call()`` retrying only on ``ServerError``.

    Every other error propagates on the first attempt. Streaming calls must
    never go through here: a retry would duplicate partial output.
    """
    config = config or RetryConfig()
    for attempt in range(config.max_attempts):
        try:
            return await call()
        except ServerError as e:
            if attempt == config.max_attempts - 1:
                logger.error(f"{description} failed after {config.max_attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, config)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{config.max_attempts}): {e}; "
                f"retrying in {delay * 1000:.0f}ms"
            )
            await sleep(delay)
    raise RuntimeError("unreachable")  # max_attempts is validated > 0
