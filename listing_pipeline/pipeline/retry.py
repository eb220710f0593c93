"""Retry helper with exponential backoff for transient provider failures."""

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from listing_pipeline.core.exceptions import TransientProviderError
from listing_pipeline.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryConfig:
    def __init__(self, attempts: int = 3, backoff_seconds: float = 1.0):
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt: base, 2*base, 4*base..."""
        return self.backoff_seconds * (2 ** (attempt - 1))


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    retry_config: Optional[RetryConfig] = None,
    operation: str = "provider_call"
) -> Tuple[T, int]:
    """
    Await func() until it succeeds or the attempt budget runs out.

    Only TransientProviderError is retried; anything else propagates
    immediately. Returns (result, attempts_used).
    """
    config = retry_config or RetryConfig()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func(), attempt
        except TransientProviderError as e:
            if attempt >= config.attempts:
                e.details["attempts"] = attempt
                raise
            delay = config.delay_for(attempt)
            logger.warning(
                "transient_failure_retrying",
                operation=operation,
                attempt=attempt,
                delay_seconds=delay,
                failure_kind=e.failure_kind,
                error=e.message
            )
            await asyncio.sleep(delay)


__all__ = ["RetryConfig", "retry_transient"]
