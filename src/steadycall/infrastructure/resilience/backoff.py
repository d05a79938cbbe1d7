"""
Exponential backoff policy.

Computes the wait before each retry attempt and decides which errors are
worth retrying. Policies are immutable and hold no mutable state, so one
instance can be shared by every caller of a dependency.
"""

import random
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type

# Jitter adds up to this fraction of the capped delay
JITTER_FACTOR = 0.3


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry policy with capped exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_interval: Delay in seconds before the first retry
        max_interval: Cap in seconds applied before jitter
        multiplier: Growth factor between consecutive delays
        jitter: Add 0-30% random jitter to each delay
        retryable_errors: Exception classes worth retrying; empty means all errors
        classifier: Optional predicate overriding retryable_errors
    """
    max_retries: int = 3
    initial_interval: float = 1.0
    max_interval: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    retryable_errors: Tuple[Type[BaseException], ...] = ()
    classifier: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_interval <= 0:
            raise ValueError("initial_interval must be > 0")
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    @classmethod
    def default(cls) -> "BackoffPolicy":
        """3 retries, 1s initial delay, 30s cap, x2 growth, jitter on."""
        return cls()

    def base_delay(self, attempt: int) -> float:
        """Capped exponential delay for an attempt, without jitter."""
        if attempt <= 0:
            return 0.0
        delay = self.initial_interval * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_interval)

    def compute_delay(self, attempt: int) -> float:
        """
        Compute the wait before the given attempt.

        Args:
            attempt: Attempt number, starting at 1 for the first retry

        Returns:
            Delay in seconds; never more than max_interval * 1.3
        """
        delay = self.base_delay(attempt)
        if self.jitter and delay > 0:
            delay += random.uniform(0, JITTER_FACTOR * delay)
        return delay

    def is_retryable(self, error: Optional[BaseException]) -> bool:
        """
        Decide whether an error should trigger another attempt.

        Matching is by exception class, and also inspects the ``__cause__``
        chain so wrapped upstream errors keep their category.
        """
        if error is None:
            return False

        if self.classifier is not None:
            return bool(self.classifier(error))

        if not self.retryable_errors:
            return True

        seen = set()
        current: Optional[BaseException] = error
        while current is not None and id(current) not in seen:
            if isinstance(current, self.retryable_errors):
                return True
            seen.add(id(current))
            current = current.__cause__

        return False
