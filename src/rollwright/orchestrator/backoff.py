"""Bounded exponential backoff shared by registry publish and sync retries.

Formula: ``min(initial_delay * multiplier ** attempt, max_delay)``, optionally
scaled by a jitter factor in ``[0.5, 1.0)``.
"""

from __future__ import annotations

import asyncio
import random

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class BackoffConfig(BaseModel):
    """Exponential backoff configuration.

    Attributes:
        initial_delay_seconds: Delay before the first retry
        max_delay_seconds: Cap on any single delay
        multiplier: Growth factor per attempt
        max_retries: Retries after the first attempt (bounded)
        jitter: Scale delays by a random factor
    """

    initial_delay_seconds: float = Field(default=5.0, ge=0.0, le=3600.0)
    max_delay_seconds: float = Field(default=180.0, ge=0.0, le=3600.0)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_retries: int = Field(default=5, ge=0, le=100)
    jitter: bool = Field(default=False)


class ExponentialBackoff:
    """Exponential backoff calculator with an awaitable wait.

    Args:
        config: Backoff configuration
    """

    def __init__(self, config: BackoffConfig) -> None:
        self._config = config

    @property
    def config(self) -> BackoffConfig:
        return self._config

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    def next_delay(self, attempt: int) -> float:
        """Calculate the delay before retry number ``attempt`` (0-indexed).

        Args:
            attempt: Attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self._config.initial_delay_seconds * (self._config.multiplier**attempt)
        delay = min(delay, self._config.max_delay_seconds)

        if self._config.jitter:
            delay *= 0.5 + random.random() * 0.5

        return delay

    def delays(self) -> list[float]:
        """All delays of a full retry budget, in order."""
        return [self.next_delay(attempt) for attempt in range(self._config.max_retries)]

    async def wait(self, attempt: int) -> float:
        """Sleep for the delay of ``attempt`` and return it."""
        delay = self.next_delay(attempt)
        logger.info("backoff_waiting", attempt=attempt, delay=round(delay, 3))
        await asyncio.sleep(delay)
        return delay
