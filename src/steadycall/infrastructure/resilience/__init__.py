"""Resilience infrastructure for SteadyCall."""

from .backoff import BackoffPolicy
from .cancellation import CancellationToken
from .retry import (
    execute_with_retry,
    execute_with_retry_sync,
    retry_with_backoff,
    retry_with_backoff_sync,
)
from .circuit_breaker import (
    BreakerCounts,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitBreakerStats,
)
from .rate_limiter import (
    AdaptiveRateLimiter,
    KeyedRateLimiter,
    MultiTierRateLimiter,
    RateLimiter,
    RateLimiterConfig,
    Reservation,
    TokenBucket,
)
from .registry import CircuitBreakerRegistry, LazyRegistry, RateLimiterRegistry
from .chain import (
    LAYER_ORDER,
    CircuitBreakerLayer,
    Layer,
    OperationTelemetry,
    RateLimitLayer,
    ResilienceChain,
    ResilienceFactory,
    ResilientOperation,
    RetryLayer,
    TelemetrySnapshot,
)
from .monitor import (
    StateChangeEvent,
    StateChangeQueue,
    log_circuit_breaker_stats,
    monitor_circuit_breakers,
)

__all__ = [
    "BackoffPolicy",
    "CancellationToken",
    "execute_with_retry",
    "execute_with_retry_sync",
    "retry_with_backoff",
    "retry_with_backoff_sync",
    "BreakerCounts",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitBreakerStats",
    "AdaptiveRateLimiter",
    "KeyedRateLimiter",
    "MultiTierRateLimiter",
    "RateLimiter",
    "RateLimiterConfig",
    "Reservation",
    "TokenBucket",
    "CircuitBreakerRegistry",
    "LazyRegistry",
    "RateLimiterRegistry",
    "LAYER_ORDER",
    "CircuitBreakerLayer",
    "Layer",
    "OperationTelemetry",
    "RateLimitLayer",
    "ResilienceChain",
    "ResilienceFactory",
    "ResilientOperation",
    "RetryLayer",
    "TelemetrySnapshot",
    "StateChangeEvent",
    "StateChangeQueue",
    "log_circuit_breaker_stats",
    "monitor_circuit_breakers",
]
