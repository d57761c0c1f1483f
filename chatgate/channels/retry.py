"""
Exponential backoff for platform API calls.

Only rate-limit failures (HTTP 429) are retried; everything else is
re-raised immediately so callers see the original exception.

Usage:
    from chatgate.channels.retry import with_retry

    result = await with_retry(lambda: client.chat_postMessage(channel=c, text=t))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


def is_rate_limited(error: BaseException) -> bool:
    """Return True if the error signals an HTTP 429 / rate limit."""
    for attr in ("status", "status_code"):
        if getattr(error, attr, None) == 429:
            return True

    # httpx.HTTPStatusError and slack_sdk.errors.SlackApiError carry a response
    response = getattr(error, "response", None)
    if response is not None and getattr(response, "status_code", None) == 429:
        return True

    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    return min(base_delay_ms * (2**attempt), max_delay_ms)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> T:
    """
    Call ``fn`` and retry on rate limits with exponential backoff.

    Args:
        fn: Zero-argument coroutine function performing the call
        max_retries: Retries after the first attempt
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound for any single delay

    Returns:
        Whatever ``fn`` returns on the first successful attempt

    Raises:
        The first non-rate-limit error, or the last rate-limit error once
        retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_rate_limited(e) or attempt >= max_retries:
                raise
            delay = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            attempt += 1
            logger.warning(
                "Rate limited, retrying in %dms (attempt %d/%d)", delay, attempt, max_retries
            )
            await asyncio.sleep(delay / 1000)
