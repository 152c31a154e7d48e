"""Bounded retry with exponential backoff.

Delays are base * 2**attempt (2s, 4s, ... for base 2). Cancellation is
checked before every attempt so a shutdown never waits out a backoff
chain.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """All attempts failed. `last_error` holds the final cause."""

    def __init__(self, message: str, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RetryCancelled(Exception):
    """Cancellation was requested between attempts."""


def backoff_delay(attempt: int, base: float = 2.0, max_delay: float = 30.0) -> float:
    """Delay before retry number `attempt` (0-based)."""
    return min(base * (2 ** attempt), max_delay)


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    is_cancelled: Callable[[], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> tuple[T, int]:
    """Run `operation(attempt)` until it returns without raising.

    Returns (result, attempts_used). Raises RetryExhausted after
    max_attempts failures, or RetryCancelled if is_cancelled() turns
    true between attempts.
    """
    last_error: BaseException | None = None
    for attempt in range(max_attempts):
        if is_cancelled is not None and is_cancelled():
            raise RetryCancelled(f"{description} cancelled before attempt {attempt + 1}")
        try:
            return await operation(attempt), attempt + 1
        except (RetryCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            last_error = e
            logger.debug(
                "%s failed on attempt %d/%d: %s",
                description, attempt + 1, max_attempts, e,
            )

        if attempt < max_attempts - 1:
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug("Retrying %s in %.1fs", description, delay)
            await sleep(delay)

    raise RetryExhausted(
        f"{description} failed after {max_attempts} attempts: {last_error}",
        attempts=max_attempts,
        last_error=last_error,
    )
