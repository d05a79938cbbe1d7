"""
Retry executor with exponential backoff.

Runs a remote operation under a BackoffPolicy. Exactly one attempt is made
before the first wait, waits are cancellation-aware, and every terminal
outcome is either the result, the original non-retryable error, or a
classified RetryError chained to its cause.
"""

from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ...domain.exceptions import (
    STRUCTURAL_REJECTIONS,
    CancellationError,
    MaxRetriesExceededError,
    RetryCancelledError,
)
from ..logging import SteadyCallLogger, logging_context
from .backoff import BackoffPolicy
from .cancellation import CancellationToken

T = TypeVar("T")


class _RetryRun:
    """Bookkeeping and logging shared by the async and sync executors."""

    def __init__(
        self,
        name: str,
        policy: Optional[BackoffPolicy],
        token: Optional[CancellationToken],
    ):
        self.name = name
        self.policy = policy if policy else BackoffPolicy.default()
        self.token = token if token else CancellationToken.background()
        self.logger = SteadyCallLogger.get_instance()
        self.max_attempts = self.policy.max_retries + 1

    def on_success(self, attempt: int) -> None:
        if attempt > 1:
            with logging_context(operation="retry_success"):
                self.logger.info(
                    f"Retry successful for {self.name}",
                    extra={
                        "dependency": self.name,
                        "successful_attempt": attempt,
                        "total_attempts": attempt,
                    },
                )

    def is_rejection(self, error: Exception) -> bool:
        """
        True for breaker and limiter rejections the policy did not opt into.

        A rejection is only retried when the policy's classifier accepts it
        or its class is listed in ``retryable_errors``; an empty list alone
        does not cover it.
        """
        if not isinstance(error, STRUCTURAL_REJECTIONS):
            return False
        if self.policy.classifier is not None:
            return not self.policy.classifier(error)
        return not isinstance(error, self.policy.retryable_errors)

    def on_failure(self, attempt: int, error: Exception) -> float:
        """
        Classify a failed attempt.

        Returns:
            Delay before the next attempt

        Raises:
            The original error when it is not retryable or is a breaker or
            limiter rejection, RetryCancelledError when the token is done,
            MaxRetriesExceededError when attempts are exhausted.
        """
        if self.is_rejection(error):
            with logging_context(operation="retry_rejected"):
                self.logger.warning(
                    f"Call to {self.name} rejected before running",
                    extra={
                        "dependency": self.name,
                        "attempt": attempt,
                        "error_type": type(error).__name__,
                        "error_message": str(error),
                    },
                )
            raise error

        if not self.policy.is_retryable(error):
            with logging_context(operation="retry_non_retryable"):
                self.logger.error(
                    f"Non-retryable exception in {self.name}",
                    extra={
                        "dependency": self.name,
                        "attempt": attempt,
                        "error_type": type(error).__name__,
                        "error_message": str(error),
                    },
                )
            raise error

        cancellation = self.token.error()
        if cancellation is not None:
            raise self._cancelled(attempt, cancellation) from cancellation

        if attempt >= self.max_attempts:
            with logging_context(operation="retry_exhausted"):
                self.logger.error(
                    f"All retry attempts exhausted for {self.name}",
                    extra={
                        "dependency": self.name,
                        "total_attempts": attempt,
                        "error_type": type(error).__name__,
                        "error_message": str(error),
                    },
                )
            raise MaxRetriesExceededError(attempt, error, name=self.name) from error

        delay = self.policy.compute_delay(attempt)
        with logging_context(operation="retry_backoff"):
            self.logger.warning(
                f"Retrying {self.name} (attempt {attempt + 1}/{self.max_attempts})",
                extra={
                    "dependency": self.name,
                    "attempt": attempt + 1,
                    "max_attempts": self.max_attempts,
                    "delay_seconds": round(delay, 3),
                    "last_error": type(error).__name__,
                },
            )
        return delay

    def _cancelled(self, attempt: int, cause: CancellationError) -> RetryCancelledError:
        with logging_context(operation="retry_cancelled"):
            self.logger.warning(
                f"Retry cancelled for {self.name}",
                extra={
                    "dependency": self.name,
                    "attempts": attempt,
                    "reason": str(cause),
                },
            )
        return RetryCancelledError(cause, attempts=attempt, name=self.name)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[BackoffPolicy] = None,
    token: Optional[CancellationToken] = None,
    name: Optional[str] = None,
) -> T:
    """
    Run an async operation with retries.

    Args:
        operation: Zero-argument coroutine function performing the remote call
        policy: Backoff policy (BackoffPolicy.default() if None)
        token: Cancellation token consulted between attempts
        name: Dependency name used in logs and errors

    Returns:
        The operation's result

    Raises:
        Exception: The operation's own error when it is not retryable
        MaxRetriesExceededError: Every attempt failed with a retryable error
        RetryCancelledError: The token finished before the next attempt

    Example:
        >>> balance = await execute_with_retry(
        ...     lambda: client.get_balance(account_id),
        ...     policy=BackoffPolicy(max_retries=2),
        ...     name="plaid",
        ... )
    """
    run = _RetryRun(name or getattr(operation, "__name__", "operation"), policy, token)

    attempt = 0
    while True:
        attempt += 1
        try:
            result = await operation()
        except Exception as e:
            delay = run.on_failure(attempt, e)
        else:
            run.on_success(attempt)
            return result

        try:
            await run.token.sleep(delay)
        except CancellationError as cancel:
            raise run._cancelled(attempt, cancel) from cancel


def execute_with_retry_sync(
    operation: Callable[[], T],
    policy: Optional[BackoffPolicy] = None,
    token: Optional[CancellationToken] = None,
    name: Optional[str] = None,
) -> T:
    """
    Run a blocking operation with retries.

    Same contract as execute_with_retry(); waits block the calling thread
    and wake early when the token is cancelled from another thread.
    """
    run = _RetryRun(name or getattr(operation, "__name__", "operation"), policy, token)

    attempt = 0
    while True:
        attempt += 1
        try:
            result = operation()
        except Exception as e:
            delay = run.on_failure(attempt, e)
        else:
            run.on_success(attempt)
            return result

        try:
            run.token.sleep_sync(delay)
        except CancellationError as cancel:
            raise run._cancelled(attempt, cancel) from cancel


def retry_with_backoff(
    policy: Optional[BackoffPolicy] = None,
    token: Optional[CancellationToken] = None,
):
    """
    Decorator for retrying async functions with exponential backoff.

    Example:
        >>> @retry_with_backoff(BackoffPolicy(max_retries=5))
        ... async def fetch_quote(symbol):
        ...     return await feed.quote(symbol)
    """
    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await execute_with_retry(
                lambda: func(*args, **kwargs),
                policy=policy,
                token=token,
                name=func.__name__,
            )

        return wrapper
    return decorator


def retry_with_backoff_sync(
    policy: Optional[BackoffPolicy] = None,
    token: Optional[CancellationToken] = None,
):
    """Decorator for retrying synchronous functions with exponential backoff."""
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            return execute_with_retry_sync(
                lambda: func(*args, **kwargs),
                policy=policy,
                token=token,
                name=func.__name__,
            )

        return wrapper
    return decorator
