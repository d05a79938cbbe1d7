"""
Circuit Breaker pattern implementation.

Stops calling a failing dependency for a cooldown window, then admits a
limited number of probe calls to test whether it recovered. All state for
one breaker is guarded by that breaker's own lock; breakers for different
dependencies never contend.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from ...domain.exceptions import CircuitOpenError, TooManyRequestsError
from ..logging import SteadyCallLogger, logging_context

T = TypeVar("T")

StateChangeListener = Callable[[str, "CircuitBreakerState", "CircuitBreakerState"], None]


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failure threshold exceeded, requests blocked
    HALF_OPEN = "half_open"  # Probing whether the dependency recovered


@dataclass
class BreakerCounts:
    """Rolling request counts for the current state generation."""
    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def on_request(self) -> None:
        self.requests += 1

    def on_success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def on_failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0

    def clear(self) -> None:
        self.requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.consecutive_successes = 0
        self.consecutive_failures = 0


@dataclass
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Attributes:
        max_requests: Probe calls allowed in flight while HALF_OPEN
        interval: Seconds between count resets while CLOSED (0 = never)
        timeout: Seconds to stay OPEN before probing
        failure_threshold: Consecutive failures that open the circuit
        success_threshold: Consecutive probe successes that close it again
        exclude_exceptions: Exceptions that don't count as failures
        is_failure: Optional predicate deciding which errors count as failures
        on_state_change: Called with (name, from_state, to_state) on every transition
    """
    max_requests: int = 3
    interval: float = 60.0
    timeout: float = 30.0
    failure_threshold: int = 5
    success_threshold: int = 2
    exclude_exceptions: Tuple[type, ...] = ()
    is_failure: Optional[Callable[[BaseException], bool]] = None
    on_state_change: Optional[StateChangeListener] = field(default=None, repr=False)

    def __post_init__(self):
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.interval < 0 or self.timeout < 0:
            raise ValueError("interval and timeout must be >= 0")


@dataclass(frozen=True)
class CircuitBreakerStats:
    """Point-in-time statistics for one breaker."""
    name: str
    state: CircuitBreakerState
    total_requests: int
    total_successes: int
    total_failures: int
    consecutive_successes: int
    consecutive_failures: int

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "total_requests": self.total_requests,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
        }


class CircuitBreaker:
    """
    Circuit breaker for one dependency.

    CLOSED counts results and opens after ``failure_threshold`` consecutive
    failures. OPEN rejects every call until ``timeout`` has elapsed; the next
    call then moves the breaker to HALF_OPEN (lazily, no background timer)
    and is admitted as a probe. HALF_OPEN closes after ``success_threshold``
    consecutive successes and reopens on any failure.

    Thread-safe; usable from threads and asyncio tasks alike.

    Example:
        >>> breaker = CircuitBreaker(name="stripe")
        >>>
        >>> @breaker.protect
        ... async def create_charge(amount):
        ...     return await gateway.charge(amount)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Name of the protected dependency (unique per dependency)
            config: Circuit breaker configuration
            clock: Monotonic clock, injectable for tests
        """
        self.name = name
        self.config = config if config else CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitBreakerState.CLOSED
        self._counts = BreakerCounts()
        self._generation = 0
        self._half_open_in_flight = 0
        self._last_state_change_at = clock()
        self._expiry: Optional[float] = None
        self._new_generation(self._last_state_change_at)

        self.logger = SteadyCallLogger.get_instance()

    # State machine. Every method below expects self._lock to be held and
    # appends (from, to) pairs to `transitions` for dispatch after release.

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts.clear()
        self._half_open_in_flight = 0

        if self._state == CircuitBreakerState.CLOSED:
            self._expiry = now + self.config.interval if self.config.interval > 0 else None
        elif self._state == CircuitBreakerState.OPEN:
            self._expiry = now + self.config.timeout
        else:
            self._expiry = None

    def _set_state(
        self,
        state: CircuitBreakerState,
        now: float,
        transitions: List[Tuple[CircuitBreakerState, CircuitBreakerState]],
    ) -> None:
        if self._state == state:
            return
        previous = self._state
        self._state = state
        self._last_state_change_at = now
        self._new_generation(now)
        transitions.append((previous, state))

    def _current_state(self, now: float, transitions) -> CircuitBreakerState:
        if self._state == CircuitBreakerState.CLOSED:
            if self._expiry is not None and self._expiry <= now:
                self._new_generation(now)
        elif self._state == CircuitBreakerState.OPEN:
            if self._expiry is not None and self._expiry <= now:
                self._set_state(CircuitBreakerState.HALF_OPEN, now, transitions)
        return self._state

    def _before_request(self) -> int:
        """Admit or reject a call; returns the generation it belongs to."""
        transitions: List[Tuple[CircuitBreakerState, CircuitBreakerState]] = []
        rejection: Optional[Exception] = None
        with self._lock:
            now = self._clock()
            state = self._current_state(now, transitions)
            generation = self._generation

            if state == CircuitBreakerState.OPEN:
                retry_after = max(0.0, (self._expiry or now) - now)
                rejection = CircuitOpenError(self.name, retry_after)
            elif (state == CircuitBreakerState.HALF_OPEN and
                  self._half_open_in_flight >= self.config.max_requests):
                rejection = TooManyRequestsError(self.name, self.config.max_requests)
            else:
                self._counts.on_request()
                if state == CircuitBreakerState.HALF_OPEN:
                    self._half_open_in_flight += 1

        self._dispatch(transitions)

        if rejection is not None:
            with logging_context(operation="circuit_breaker_blocked"):
                self.logger.warning(
                    f"Circuit breaker blocked call: {self.name}",
                    extra={
                        "circuit_breaker": self.name,
                        "state": state.value,
                        "error_type": type(rejection).__name__,
                    },
                )
            raise rejection

        return generation

    def _after_request(self, generation: int, success: bool) -> None:
        transitions: List[Tuple[CircuitBreakerState, CircuitBreakerState]] = []
        with self._lock:
            now = self._clock()
            state = self._current_state(now, transitions)
            # Results from an earlier generation no longer describe this state
            if generation == self._generation:
                if success:
                    self._on_success(state, now, transitions)
                else:
                    self._on_failure(state, now, transitions)

        self._dispatch(transitions)

    def _on_success(self, state, now, transitions) -> None:
        if state == CircuitBreakerState.CLOSED:
            self._counts.on_success()
        elif state == CircuitBreakerState.HALF_OPEN:
            self._half_open_in_flight -= 1
            self._counts.on_success()
            if self._counts.consecutive_successes >= self.config.success_threshold:
                self._set_state(CircuitBreakerState.CLOSED, now, transitions)

    def _on_failure(self, state, now, transitions) -> None:
        if state == CircuitBreakerState.CLOSED:
            self._counts.on_failure()
            if self._counts.consecutive_failures >= self.config.failure_threshold:
                self._set_state(CircuitBreakerState.OPEN, now, transitions)
        elif state == CircuitBreakerState.HALF_OPEN:
            self._set_state(CircuitBreakerState.OPEN, now, transitions)

    def _counts_as_failure(self, error: BaseException) -> bool:
        if self.config.exclude_exceptions and isinstance(error, self.config.exclude_exceptions):
            return False
        if self.config.is_failure is not None:
            return bool(self.config.is_failure(error))
        return True

    def _dispatch(self, transitions) -> None:
        """Log transitions and notify the listener, outside the lock."""
        for previous, current in transitions:
            self._log_transition(previous, current)
            listener = self.config.on_state_change
            if listener is None:
                continue
            try:
                listener(self.name, previous, current)
            except Exception:
                self.logger.error(
                    f"Circuit breaker state listener failed: {self.name}",
                    exc_info=True,
                    extra={
                        "circuit_breaker": self.name,
                        "from_state": previous.value,
                        "to_state": current.value,
                    },
                )

    def _log_transition(self, previous: CircuitBreakerState, current: CircuitBreakerState) -> None:
        extra = {
            "circuit_breaker": self.name,
            "from_state": previous.value,
            "state": current.value,
        }
        if current == CircuitBreakerState.OPEN:
            reopened = previous == CircuitBreakerState.HALF_OPEN
            with logging_context(operation="circuit_breaker_reopened" if reopened else "circuit_breaker_opened"):
                self.logger.error(
                    f"Circuit breaker {'reopened (recovery failed)' if reopened else 'opened (failure threshold exceeded)'}: {self.name}",
                    extra={
                        **extra,
                        "failure_threshold": self.config.failure_threshold,
                        "timeout_seconds": self.config.timeout,
                    },
                )
        elif current == CircuitBreakerState.HALF_OPEN:
            with logging_context(operation="circuit_breaker_half_open"):
                self.logger.info(f"Circuit breaker entering HALF_OPEN state: {self.name}", extra=extra)
        else:
            with logging_context(operation="circuit_breaker_closed"):
                self.logger.info(
                    f"Circuit breaker closed (recovered): {self.name}",
                    extra={**extra, "success_threshold": self.config.success_threshold},
                )

    # Public API

    @property
    def state(self) -> CircuitBreakerState:
        """Current state, applying any due OPEN -> HALF_OPEN transition."""
        transitions: List[Tuple[CircuitBreakerState, CircuitBreakerState]] = []
        with self._lock:
            state = self._current_state(self._clock(), transitions)
        self._dispatch(transitions)
        return state

    @property
    def counts(self) -> BreakerCounts:
        """Copy of the current generation's counts."""
        with self._lock:
            c = self._counts
            return BreakerCounts(
                c.requests, c.total_successes, c.total_failures,
                c.consecutive_successes, c.consecutive_failures,
            )

    @property
    def last_state_change_at(self) -> float:
        with self._lock:
            return self._last_state_change_at

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run an async operation through the breaker.

        Raises:
            CircuitOpenError: Circuit is OPEN; operation not invoked
            TooManyRequestsError: HALF_OPEN probe slots are full
            Exception: Whatever the operation raised
        """
        generation = self._before_request()
        try:
            result = await operation()
        except Exception as e:
            self._after_request(generation, not self._counts_as_failure(e))
            raise
        except BaseException:
            # Task cancellation says nothing about the dependency's health
            self._release_probe(generation)
            raise
        self._after_request(generation, True)
        return result

    def call_sync(self, operation: Callable[[], T]) -> T:
        """Run a blocking operation through the breaker."""
        generation = self._before_request()
        try:
            result = operation()
        except Exception as e:
            self._after_request(generation, not self._counts_as_failure(e))
            raise
        except BaseException:
            self._release_probe(generation)
            raise
        self._after_request(generation, True)
        return result

    def _release_probe(self, generation: int) -> None:
        with self._lock:
            if (generation == self._generation and
                    self._state == CircuitBreakerState.HALF_OPEN):
                self._half_open_in_flight -= 1

    async def call_with_fallback(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run an operation, using ``fallback`` only for structural rejections.

        The fallback runs when the breaker rejected the call (OPEN or too many
        half-open probes). Ordinary operation failures still count toward the
        failure tally and propagate to the caller.
        """
        try:
            return await self.call(operation)
        except (CircuitOpenError, TooManyRequestsError):
            with logging_context(operation="circuit_breaker_fallback"):
                self.logger.info(
                    f"Using fallback for {self.name}",
                    extra={"circuit_breaker": self.name},
                )
            return await fallback()

    def call_with_fallback_sync(
        self,
        operation: Callable[[], T],
        fallback: Callable[[], T],
    ) -> T:
        """Blocking counterpart of call_with_fallback()."""
        try:
            return self.call_sync(operation)
        except (CircuitOpenError, TooManyRequestsError):
            with logging_context(operation="circuit_breaker_fallback"):
                self.logger.info(
                    f"Using fallback for {self.name}",
                    extra={"circuit_breaker": self.name},
                )
            return fallback()

    def protect(self, func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """
        Decorator to protect an async function with the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
        """
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await self.call(lambda: func(*args, **kwargs))

        return wrapper

    def protect_sync(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Decorator to protect a synchronous function with the circuit breaker."""
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            return self.call_sync(lambda: func(*args, **kwargs))

        return wrapper

    def get_stats(self) -> CircuitBreakerStats:
        """Snapshot of state and counts."""
        transitions: List[Tuple[CircuitBreakerState, CircuitBreakerState]] = []
        with self._lock:
            state = self._current_state(self._clock(), transitions)
            c = self._counts
            stats = CircuitBreakerStats(
                name=self.name,
                state=state,
                total_requests=c.requests,
                total_successes=c.total_successes,
                total_failures=c.total_failures,
                consecutive_successes=c.consecutive_successes,
                consecutive_failures=c.consecutive_failures,
            )
        self._dispatch(transitions)
        return stats

    def reset(self) -> None:
        """Manually reset the circuit breaker to CLOSED state."""
        transitions: List[Tuple[CircuitBreakerState, CircuitBreakerState]] = []
        with self._lock:
            now = self._clock()
            if self._state == CircuitBreakerState.CLOSED:
                self._new_generation(now)
            else:
                self._set_state(CircuitBreakerState.CLOSED, now, transitions)

        with logging_context(operation="circuit_breaker_reset"):
            self.logger.info(
                f"Circuit breaker manually reset: {self.name}",
                extra={
                    "circuit_breaker": self.name,
                    "state": CircuitBreakerState.CLOSED.value,
                },
            )
        self._dispatch(transitions)

    def __repr__(self) -> str:
        return f"<CircuitBreaker {self.name} state={self._state.value}>"
