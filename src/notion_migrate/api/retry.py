"""Failure classification and backoff for stage retries."""

import asyncio
import random
from enum import Enum
from typing import Callable, Optional

import aiohttp

from .exceptions import (
    ConflictError,
    FatalStageError,
    RateLimitError,
    TransientError,
    ValidationError,
)


class ErrorClass(str, Enum):
    """How a failure should be handled."""

    TRANSIENT = 'transient'
    RATE_LIMITED = 'rate_limited'
    FATAL = 'fatal'


class RetryPolicy:
    """Single retry policy consulted by every pipeline stage."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.25,
        rate_limit_multiplier: float = 4.0,
        rng: Optional[Callable[[], float]] = None,
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Attempt ceiling per entry
            base_delay: Delay in seconds before the first retry
            max_delay: Cap applied to the exponential transient delay
            jitter: Upper bound of the random fraction added to each delay
            rate_limit_multiplier: Factor applied to rate-limited delays. Must
                exceed ``1 + jitter`` so quota backoff always outlasts a
                transient backoff for the same attempt.
            rng: Source of uniform numbers in [0, 1)
        """
        if max_attempts < 1:
            raise ValidationError('max_attempts must be at least 1')
        if base_delay <= 0 or max_delay < base_delay:
            raise ValidationError('Backoff delays must satisfy 0 < base <= max')
        if jitter < 0:
            raise ValidationError('jitter must not be negative')
        if rate_limit_multiplier <= 1 + jitter:
            raise ValidationError('rate_limit_multiplier must exceed 1 + jitter')

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.rate_limit_multiplier = rate_limit_multiplier
        self._rng = rng or random.random

    def classify(self, error: BaseException) -> ErrorClass:
        """Classify an error raised by a stage."""
        if isinstance(error, RateLimitError):
            return ErrorClass.RATE_LIMITED
        if isinstance(error, (TransientError, ConflictError)):
            return ErrorClass.TRANSIENT
        if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError)):
            return ErrorClass.TRANSIENT
        if isinstance(error, (FatalStageError, ValidationError)):
            return ErrorClass.FATAL
        return ErrorClass.FATAL

    def should_retry(self, error_class: ErrorClass, attempts: int) -> bool:
        """Check whether another attempt is allowed.

        Args:
            error_class: Classification of the last failure
            attempts: Attempts made so far, including the failed one
        """
        return error_class != ErrorClass.FATAL and attempts < self.max_attempts

    def compute_backoff(
        self,
        attempt: int,
        error_class: ErrorClass = ErrorClass.TRANSIENT,
        error: Optional[BaseException] = None,
    ) -> float:
        """Compute the delay before the next attempt.

        Args:
            attempt: Attempt number that just failed (1-based)
            error_class: Classification of the failure
            error: The failure itself, consulted for ``retry_after``

        Returns:
            Delay in seconds
        """
        delay = min(self.base_delay * 2 ** max(attempt - 1, 0), self.max_delay)
        if error_class == ErrorClass.RATE_LIMITED:
            delay *= self.rate_limit_multiplier
        delay *= 1 + self.jitter * self._rng()

        retry_after = getattr(error, 'retry_after', None)
        if error_class == ErrorClass.RATE_LIMITED and retry_after:
            delay = max(delay, float(retry_after))

        return delay
