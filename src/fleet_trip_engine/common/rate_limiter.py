# fleet_trip_engine/common/rate_limiter.py
"""
Process-wide token-bucket rate limiter for provider calls.

One limiter instance is created per process and handed to the provider
client by reference. Every sync worker goes through the same bucket, so the
aggregate request rate never exceeds the configured budget no matter how
many devices are processed concurrently.

Three rules are enforced together:
- Token bucket: sustained `requests_per_second`, bursts up to `burst`.
- Minimum spacing: no two requests closer than `min_interval_seconds`.
- Cooldown: after the provider signals a rate limit, `penalize()` pauses
  every caller until the cooldown expires.

The clock and sleep functions are injectable so tests can drive time
deterministically.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Final, Self

from fleet_trip_engine.config import RateLimitConfig

__all__: list[str] = ['TokenBucketRateLimiter']

logger: logging.Logger = logging.getLogger(__name__)

# Absorbs float error left after sleeping exactly the computed refill time.
_TOKEN_EPSILON: Final[float] = 1e-9


class TokenBucketRateLimiter:
    """
    Thread-safe token bucket with minimum spacing and a global cooldown.

    Example:
        >>> limiter = TokenBucketRateLimiter(requests_per_second=5, burst=5)
        >>> limiter.acquire()  # blocks until a request may be sent
        0.0
    """

    def __init__(
        self,
        requests_per_second: float,
        burst: int = 1,
        min_interval_seconds: float = 0.0,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the limiter with a full bucket.

        Args:
            requests_per_second: Token refill rate. Must be positive.
            burst: Bucket capacity. Must be at least 1.
            min_interval_seconds: Minimum spacing between granted requests.
            cooldown_seconds: Default pause applied by penalize().
            clock: Monotonic time source in seconds.
            sleep: Blocking sleep function.

        Raises:
            ValueError: If the rate or burst is not positive.
        """
        if requests_per_second <= 0:
            raise ValueError(
                f'requests_per_second must be positive, got: {requests_per_second}'
            )
        if burst < 1:
            raise ValueError(f'burst must be at least 1, got: {burst}')

        self._rate: float = requests_per_second
        self._capacity: float = float(burst)
        self._min_interval: float = max(0.0, min_interval_seconds)
        self._default_cooldown: float = max(0.0, cooldown_seconds)
        self._clock: Callable[[], float] = clock
        self._sleep: Callable[[float], None] = sleep

        self._lock: threading.Lock = threading.Lock()
        self._tokens: float = self._capacity
        self._last_refill: float = clock()
        self._last_grant: float | None = None
        self._cooldown_until: float = 0.0

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> Self:
        """Build a limiter from the rate_limit configuration section."""
        return cls(
            requests_per_second=config.requests_per_second,
            burst=config.burst,
            min_interval_seconds=config.min_interval_seconds,
            cooldown_seconds=config.cooldown_seconds,
        )

    @property
    def default_cooldown(self) -> float:
        """Pause length penalize() applies when none is given."""
        return self._default_cooldown

    @property
    def cooldown_remaining(self) -> float:
        """Seconds left in the current cooldown, 0.0 when not cooling down."""
        with self._lock:
            return max(0.0, self._cooldown_until - self._clock())

    def acquire(self) -> float:
        """
        Block until a request may be sent, then consume one token.

        Returns:
            Total seconds spent waiting.
        """
        waited: float = 0.0

        while True:
            with self._lock:
                wait_seconds: float = self._seconds_until_grant()
                if wait_seconds <= 0:
                    self._tokens -= 1.0
                    self._last_grant = self._clock()
                    return waited

            self._sleep(wait_seconds)
            waited += wait_seconds

    def try_acquire(self) -> bool:
        """Consume a token only if one is available right now."""
        with self._lock:
            if self._seconds_until_grant() > 0:
                return False
            self._tokens -= 1.0
            self._last_grant = self._clock()
            return True

    def penalize(self, cooldown_seconds: float | None = None) -> None:
        """
        Pause all callers after a provider rate-limit signal.

        The bucket is drained so requests resume gradually once the cooldown
        ends. An existing longer cooldown is never shortened.

        Args:
            cooldown_seconds: Pause length. None uses the configured default.
        """
        pause: float = self._default_cooldown if cooldown_seconds is None else cooldown_seconds

        with self._lock:
            now: float = self._clock()
            self._cooldown_until = max(self._cooldown_until, now + pause)
            self._tokens = 0.0
            self._last_refill = now

        logger.warning('Provider rate limit signalled; pausing all requests for %.1fs', pause)

    def _seconds_until_grant(self) -> float:
        """Refill the bucket and return how long the next caller must wait.

        Must be called with the lock held.
        """
        now: float = self._clock()

        elapsed: float = max(0.0, now - self._last_refill)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_refill = now

        waits: list[float] = [self._cooldown_until - now]

        if self._last_grant is not None:
            waits.append(self._last_grant + self._min_interval - now)

        if self._tokens < 1.0 - _TOKEN_EPSILON:
            waits.append((1.0 - self._tokens) / self._rate)

        return max(waits)
