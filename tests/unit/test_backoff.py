"""Unit tests for bounded exponential backoff."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rollwright.orchestrator.backoff import BackoffConfig, ExponentialBackoff


class TestExponentialBackoff:
    """Tests for ExponentialBackoff class."""

    def test_delays_grow_exponentially(self) -> None:
        backoff = ExponentialBackoff(
            BackoffConfig(initial_delay_seconds=5.0, multiplier=2.0, max_delay_seconds=180.0)
        )
        assert backoff.next_delay(0) == 5.0
        assert backoff.next_delay(1) == 10.0
        assert backoff.next_delay(2) == 20.0

    def test_delays_are_capped(self) -> None:
        """The sync retry schedule stops growing at the cap."""
        backoff = ExponentialBackoff(
            BackoffConfig(
                initial_delay_seconds=5.0,
                multiplier=2.0,
                max_delay_seconds=180.0,
                max_retries=7,
            )
        )
        assert backoff.delays() == [5.0, 10.0, 20.0, 40.0, 80.0, 160.0, 180.0]

    def test_retry_budget_is_bounded(self) -> None:
        backoff = ExponentialBackoff(BackoffConfig(max_retries=3))
        assert backoff.max_retries == 3
        assert len(backoff.delays()) == 3

    def test_jitter_stays_within_range(self) -> None:
        backoff = ExponentialBackoff(
            BackoffConfig(initial_delay_seconds=10.0, multiplier=1.0, jitter=True)
        )
        for _ in range(20):
            assert 5.0 <= backoff.next_delay(0) < 10.0

    def test_config_validation(self) -> None:
        with pytest.raises(ValidationError):
            BackoffConfig(multiplier=0.5)
        with pytest.raises(ValidationError):
            BackoffConfig(max_retries=-1)

    @pytest.mark.asyncio
    async def test_wait_returns_delay(self) -> None:
        backoff = ExponentialBackoff(
            BackoffConfig(initial_delay_seconds=0.01, multiplier=2.0, max_delay_seconds=1.0)
        )
        assert await backoff.wait(1) == pytest.approx(0.02)
