"""Bounded retry with exponential backoff for infrastructure clients."""

import asyncio
import logging
import math
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 0.05,
        max_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: tuple[type[BaseException], ...],
    timeout: float | None = None,
) -> T:
    """Run an async operation, retrying transient failures.

    Each attempt is bounded by ``timeout`` when given. The last failure is
    re-raised once ``config.max_attempts`` attempts have been made.
    """
    attempt = 1
    while True:
        try:
            if timeout is not None:
                return await asyncio.wait_for(operation(), timeout=timeout)
            return await operation()
        except retry_on as e:
            if attempt >= config.max_attempts:
                raise
            delay = config.calculate_delay(attempt)
            logger.debug(
                "Transient failure, retrying",
                extra={"attempt": attempt, "delay_seconds": delay, "error": str(e)},
            )
            await asyncio.sleep(delay)
            attempt += 1
