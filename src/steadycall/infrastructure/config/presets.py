"""Preconfigured rate limits and retry policies for common financial APIs."""

from typing import Callable, Dict

from ...domain.exceptions import (
    OperationTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
)
from ..resilience.backoff import BackoffPolicy
from ..resilience.rate_limiter import RateLimiterConfig


PROVIDER_RATE_LIMITS: Dict[str, RateLimiterConfig] = {
    "stripe": RateLimiterConfig(rate_per_second=100.0, burst=25, wait_timeout=5.0),
    # Conservative; Plaid's published limits vary per endpoint
    "plaid": RateLimiterConfig(rate_per_second=10.0, burst=5, wait_timeout=10.0),
    "truelayer": RateLimiterConfig(rate_per_second=30.0, burst=10, wait_timeout=5.0),
    # Free tier: 10 requests per minute
    "coingecko": RateLimiterConfig(rate_per_second=10.0 / 60.0, burst=5, wait_timeout=15.0),
}


def stripe_retry_policy() -> BackoffPolicy:
    """Retry policy for the Stripe API."""
    return BackoffPolicy(
        max_retries=3,
        initial_interval=0.5,
        max_interval=10.0,
        multiplier=2.0,
        jitter=True,
        retryable_errors=(OperationTimeoutError, ServiceUnavailableError, RateLimitedError),
    )


def plaid_retry_policy() -> BackoffPolicy:
    """Retry policy for the Plaid API. Rate-limit responses are not retried."""
    return BackoffPolicy(
        max_retries=2,
        initial_interval=1.0,
        max_interval=5.0,
        multiplier=1.5,
        jitter=True,
        retryable_errors=(OperationTimeoutError, ServiceUnavailableError),
    )


PROVIDER_RETRY_POLICIES: Dict[str, Callable[[], BackoffPolicy]] = {
    "stripe": stripe_retry_policy,
    "plaid": plaid_retry_policy,
}


def preset_names() -> list:
    """Every provider with at least one preset, sorted."""
    return sorted(set(PROVIDER_RATE_LIMITS) | set(PROVIDER_RETRY_POLICIES))
