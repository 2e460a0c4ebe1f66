"""Rate limiting for external service calls."""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger


class ServiceClass(str, Enum):
    """External service classes, each throttled by its own bucket."""

    CONTENT_SOURCE = 'content_source'
    AI_PROVIDER = 'ai_provider'
    OBJECT_STORAGE = 'object_storage'
    DESTINATION = 'destination'


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(
        self,
        requests_per_second: float = 10.0,
        burst: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize rate limiter.

        Args:
            requests_per_second: Token refill rate
            burst: Bucket capacity. With the default of one token, no more
                than ``requests_per_second`` tokens are handed out in any
                one-second window.
            clock: Monotonic time source
            sleep: Coroutine used to wait for tokens
        """
        if requests_per_second <= 0:
            raise ValueError('Rate limit must be positive')
        if burst < 1:
            raise ValueError('Burst must allow at least one token')

        self.requests_per_second = requests_per_second
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self.tokens = burst
        self.last_update = clock()
        # asyncio.Lock wakes waiters in arrival order, so holding it across
        # the refill wait serves callers FIFO.
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(self.burst, self.tokens + elapsed * self.requests_per_second)
        self.last_update = now

    async def acquire(self) -> None:
        """Acquire a token for making a request.

        Blocks until a token is available.
        """
        async with self._lock:
            self._refill()

            if self.tokens < 1:
                # Calculate sleep time needed
                sleep_time = (1 - self.tokens) / self.requests_per_second
                await self._sleep(sleep_time)
                self._refill()

            self.tokens = max(self.tokens - 1, 0.0)

    def can_proceed(self) -> bool:
        """Check if a request can proceed without blocking.

        Returns:
            True if a token is available, False otherwise
        """
        elapsed = self._clock() - self.last_update
        tokens = min(self.burst, self.tokens + elapsed * self.requests_per_second)

        return tokens >= 1

    def time_until_next_request(self) -> float:
        """Get time until next request can be made.

        Returns:
            Seconds until next request is allowed
        """
        if self.can_proceed():
            return 0.0

        elapsed = self._clock() - self.last_update
        tokens = self.tokens + elapsed * self.requests_per_second
        return (1 - tokens) / self.requests_per_second


class ServiceRateLimiter:
    """One independent token bucket per service class."""

    def __init__(
        self,
        limits: Dict[ServiceClass, float],
        burst: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize per-service buckets.

        Args:
            limits: Requests per second for each service class
            burst: Bucket capacity shared by all classes
            clock: Monotonic time source
            sleep: Coroutine used to wait for tokens
        """
        self._buckets = {
            service: RateLimiter(rate, burst=burst, clock=clock, sleep=sleep)
            for service, rate in limits.items()
        }
        self.logger = logger.bind(component='ServiceRateLimiter')

    def bucket(self, service: ServiceClass) -> Optional[RateLimiter]:
        """Return the bucket for a service class, if one is configured."""
        return self._buckets.get(ServiceClass(service))

    async def acquire(self, service: ServiceClass) -> None:
        """Suspend until a token for ``service`` is available.

        Services without a configured limit are not throttled.
        """
        bucket = self.bucket(service)
        if bucket is None:
            return

        if not bucket.can_proceed():
            self.logger.debug(
                f'Throttling {ServiceClass(service).value} for '
                f'{bucket.time_until_next_request():.2f}s'
            )
        await bucket.acquire()
