"""
Tests for fleet_trip_engine.common.rate_limiter module.

Tests token bucket refill, minimum spacing and the global cooldown using an
injected clock so no test ever sleeps for real.
"""

import pytest

from conftest import FakeClock
from fleet_trip_engine.common import TokenBucketRateLimiter
from fleet_trip_engine.config import RateLimitConfig


def _limiter(
    fake_clock: FakeClock,
    requests_per_second: float = 1.0,
    burst: int = 1,
    min_interval_seconds: float = 0.0,
    cooldown_seconds: float = 30.0,
) -> TokenBucketRateLimiter:
    return TokenBucketRateLimiter(
        requests_per_second=requests_per_second,
        burst=burst,
        min_interval_seconds=min_interval_seconds,
        cooldown_seconds=cooldown_seconds,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


class TestTokenBucket:
    """Test burst and sustained rate."""

    def test_burst_is_granted_immediately(self, fake_clock: FakeClock) -> None:
        """Should grant up to `burst` requests without waiting."""
        limiter = _limiter(fake_clock, burst=3)

        waits: list[float] = [limiter.acquire() for _ in range(3)]

        assert waits == [0.0, 0.0, 0.0]
        assert fake_clock.sleeps == []

    def test_waits_for_refill_after_burst(self, fake_clock: FakeClock) -> None:
        """Should wait one refill interval once the bucket is empty."""
        limiter = _limiter(fake_clock, requests_per_second=2.0, burst=1)

        limiter.acquire()
        waited: float = limiter.acquire()

        assert waited == pytest.approx(0.5)
        assert fake_clock.now == pytest.approx(0.5)

    def test_minimum_spacing(self, fake_clock: FakeClock) -> None:
        """Should space requests by min_interval even with tokens available."""
        limiter = _limiter(
            fake_clock, requests_per_second=100.0, burst=10, min_interval_seconds=0.25
        )

        limiter.acquire()
        waited: float = limiter.acquire()

        assert waited == pytest.approx(0.25)

    def test_try_acquire_does_not_block(self, fake_clock: FakeClock) -> None:
        """Should refuse instead of waiting when no token is available."""
        limiter = _limiter(fake_clock, burst=1)

        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False
        assert fake_clock.sleeps == []

    def test_aggregate_rate_is_bounded(self, fake_clock: FakeClock) -> None:
        """Should never grant more than burst + rate * elapsed requests."""
        limiter = _limiter(fake_clock, requests_per_second=5.0, burst=5)

        for _ in range(50):
            limiter.acquire()

        assert fake_clock.now >= (50 - 5) / 5.0 - 1e-6


class TestCooldown:
    """Test penalize() and cooldown_remaining."""

    def test_penalize_blocks_all_callers(self, fake_clock: FakeClock) -> None:
        """Should hold the next request until the cooldown expires."""
        limiter = _limiter(fake_clock, burst=5)

        limiter.penalize(10.0)

        assert limiter.cooldown_remaining == pytest.approx(10.0)
        assert limiter.try_acquire() is False
        assert limiter.acquire() == pytest.approx(10.0)

    def test_penalize_uses_default_cooldown(self, fake_clock: FakeClock) -> None:
        """Should apply the configured cooldown when none is given."""
        limiter = _limiter(fake_clock, cooldown_seconds=45.0)

        limiter.penalize()

        assert limiter.default_cooldown == 45.0
        assert limiter.cooldown_remaining == pytest.approx(45.0)

    def test_penalize_never_shortens_cooldown(self, fake_clock: FakeClock) -> None:
        """Should keep the longer of two overlapping cooldowns."""
        limiter = _limiter(fake_clock)

        limiter.penalize(60.0)
        limiter.penalize(5.0)

        assert limiter.cooldown_remaining == pytest.approx(60.0)


class TestConstruction:
    """Test validation and from_config()."""

    @pytest.mark.parametrize(('rate', 'burst'), [(0.0, 1), (-1.0, 1), (1.0, 0)])
    def test_rejects_invalid_parameters(self, rate: float, burst: int) -> None:
        """Should raise ValueError for a non-positive rate or burst."""
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(requests_per_second=rate, burst=burst)

    def test_from_config(self) -> None:
        """Should take every limit from the configuration section."""
        limiter = TokenBucketRateLimiter.from_config(
            RateLimitConfig(requests_per_second=2.0, burst=4, cooldown_seconds=12.0)
        )

        assert limiter.default_cooldown == 12.0
