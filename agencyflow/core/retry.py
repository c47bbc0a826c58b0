"""
Retry with exponential backoff and jitter for outbound HTTP calls.

Retries a single call when the backend answers with a rate-limit status or
the transport fails (connect error, read timeout, ...). This is the only
retry layer in the engine: failed nodes are never retried at graph level.

Example:
    response = await retry_with_backoff(
        lambda: client.post(url, json=body),
        RetryConfig(max_retries=3, initial_delay=2.0),
        description="openrouter chat",
    )
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

import httpx

from .exceptions import RateLimitError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 5
    initial_delay: float = 5.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.3
    retry_on_status: Tuple[int, ...] = (429,)

    def compute_delay(self, attempt: int, rand: float) -> float:
        """
        Delay before the retry that follows the given zero-based attempt.

        The exponential part is capped at max_delay, then widened by
        up to jitter_factor of itself.
        """
        base = min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)
        return base + base * self.jitter_factor * rand


DEFAULT_RETRY_CONFIG = RetryConfig()

# Chat completions back off faster and give up sooner
CHAT_RETRY_CONFIG = RetryConfig(max_retries=3, initial_delay=2.0)


async def retry_with_backoff(
    call: Callable[[], Awaitable[httpx.Response]],
    config: Optional[RetryConfig] = None,
    *,
    description: str = "request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> httpx.Response:
    """
    Execute call() with retries.

    Args:
        call: Zero-argument coroutine factory performing one HTTP request
        config: Retry configuration (DEFAULT_RETRY_CONFIG if None)
        description: Label for log messages
        sleep: Awaitable sleep (injectable for tests)
        rand: Random source in [0, 1) for jitter

    Returns:
        The first response whose status is not retryable

    Raises:
        RateLimitError: every attempt was rate limited
        httpx.TransportError: the last attempt failed at transport level
    """
    config = config or DEFAULT_RETRY_CONFIG
    total_attempts = config.max_retries + 1

    for attempt in range(total_attempts):
        is_last = attempt == total_attempts - 1

        try:
            response = await call()
        except httpx.TransportError as e:
            if is_last:
                logger.error(f"{description} failed after {total_attempts} attempts: {e}")
                raise
            delay = config.compute_delay(attempt, rand())
            logger.warning(
                f"{description} transport error, retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{total_attempts}): {e}"
            )
            await sleep(delay)
            continue

        if response.status_code not in config.retry_on_status:
            return response

        if is_last:
            logger.error(f"{description} still rate limited after {total_attempts} attempts")
            raise RateLimitError(
                f"{description} rate limited after {total_attempts} attempts",
                status_code=response.status_code,
            )

        delay = config.compute_delay(attempt, rand())
        logger.warning(
            f"{description} rate limited ({response.status_code}), retrying in {delay:.1f}s "
            f"(attempt {attempt + 1}/{total_attempts})"
        )
        await sleep(delay)

    # range() above always returns or raises
    raise RuntimeError("unreachable")
