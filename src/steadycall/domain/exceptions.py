"""Domain exceptions for SteadyCall."""

from enum import Enum
from typing import Optional


class SteadyCallError(Exception):
    """Base exception for all SteadyCall errors."""
    pass


# Cancellation

class CancellationError(SteadyCallError):
    """Raised when a cancellation token is done (cancelled or expired)."""
    pass


class ContextCancelledError(CancellationError):
    """Raised when a cancellation token was cancelled explicitly."""

    def __init__(self, reason: str = "context canceled"):
        self.reason = reason
        super().__init__(reason)


class DeadlineExceededError(CancellationError, TimeoutError):
    """Raised when a cancellation token's deadline has passed."""

    def __init__(self, message: str = "context deadline exceeded"):
        super().__init__(message)


# Retry

class RetryError(SteadyCallError):
    """Base exception for retry executor failures."""
    pass


class MaxRetriesExceededError(RetryError):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException, name: Optional[str] = None):
        self.attempts = attempts
        self.last_error = last_error
        self.name = name
        target = f" for {name}" if name else ""
        super().__init__(
            f"max retries exceeded{target} after {attempts} attempts: {last_error}"
        )


class RetryCancelledError(RetryError):
    """Raised when the cancellation token fired between attempts."""

    def __init__(self, cause: BaseException, attempts: int = 0, name: Optional[str] = None):
        self.cause = cause
        self.attempts = attempts
        self.name = name
        target = f" for {name}" if name else ""
        super().__init__(f"retry cancelled{target}: {cause}")


# Circuit breaker

class CircuitBreakerError(SteadyCallError):
    """Base exception for structural circuit breaker rejections."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(message)


class CircuitOpenError(CircuitBreakerError):
    """Raised when the circuit is OPEN and the call was rejected."""

    def __init__(self, name: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(
            name,
            f"circuit breaker is open for {name}; retry after {retry_after:.2f}s",
        )


class TooManyRequestsError(CircuitBreakerError):
    """Raised when HALF_OPEN already has its maximum probes in flight."""

    def __init__(self, name: str, max_requests: int):
        self.max_requests = max_requests
        super().__init__(
            name,
            f"too many requests for {name}: {max_requests} half-open probes in flight",
        )


# Rate limiting

class RateLimitError(SteadyCallError):
    """Base exception for rate limiter admission failures."""
    pass


class RateLimitExceededError(RateLimitError):
    """Raised when no token is available and the caller asked not to wait."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"rate limit exceeded for {name}")


class RateLimitWaitTimeoutError(RateLimitError, TimeoutError):
    """Raised when waiting for a token would exceed the wait budget."""

    def __init__(self, name: str, required_wait: float, budget: float):
        self.name = name
        self.required_wait = required_wait
        self.budget = budget
        super().__init__(
            f"rate limit wait for {name} would take {required_wait:.3f}s, "
            f"exceeding the {budget:.3f}s budget"
        )


class UnknownTierError(RateLimitError):
    """Raised when a tier has no configured limiter."""

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"tier {tier} not found")


# Transient upstream conditions

class TransientError(SteadyCallError):
    """Base class for upstream failures that are usually worth retrying."""
    pass


class OperationTimeoutError(TransientError, TimeoutError):
    """Raised when a remote operation timed out."""
    pass


class ServiceUnavailableError(TransientError):
    """Raised when a dependency reports it is unavailable (HTTP 503 style)."""
    pass


class RateLimitedError(TransientError):
    """Raised when a dependency throttled the call (HTTP 429 style)."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class NetworkError(TransientError):
    """Raised when the network path to a dependency failed."""
    pass


class ErrorCategory(Enum):
    """Coarse classification callers use to pick a reaction."""
    APPLICATION = "application"
    TRANSIENT = "transient"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    RETRY_EXHAUSTED = "retry_exhausted"
    CANCELLED = "cancelled"


# Rejections raised by the breaker or limiter before the remote call runs
STRUCTURAL_REJECTIONS = (CircuitBreakerError, RateLimitError)


def _structural_category(error: BaseException) -> Optional[ErrorCategory]:
    """Find a breaker or limiter rejection behind ``error``, if any."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, CircuitBreakerError):
            return ErrorCategory.CIRCUIT_OPEN
        if isinstance(current, RateLimitError):
            return ErrorCategory.RATE_LIMITED
        if isinstance(current, MaxRetriesExceededError):
            current = current.last_error
        else:
            current = current.__cause__
    return None


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Classify an error raised through a resilient operation.

    Distinguishes "the service is down" (CIRCUIT_OPEN), "we are being
    throttled" (RATE_LIMITED), "the call kept failing" (RETRY_EXHAUSTED) and
    "the caller gave up" (CANCELLED) from ordinary application failures.
    Breaker and limiter rejections keep their category when they arrive
    wrapped in MaxRetriesExceededError or as an exception's ``__cause__``.

    Args:
        error: Exception to classify

    Returns:
        Matching ErrorCategory
    """
    if isinstance(error, (RetryCancelledError, CancellationError)):
        return ErrorCategory.CANCELLED
    structural = _structural_category(error)
    if structural is not None:
        return structural
    if isinstance(error, MaxRetriesExceededError):
        return ErrorCategory.RETRY_EXHAUSTED
    if isinstance(error, RateLimitedError):
        return ErrorCategory.RATE_LIMITED
    if isinstance(error, (TransientError, ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.APPLICATION
