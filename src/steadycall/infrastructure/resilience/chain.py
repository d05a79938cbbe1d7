"""
Resilient operation chain.

Composes independent layers around a remote call. Each layer wraps one inner
callable taking a CancellationToken and returns a callable of the same shape,
so layers never know about each other. The default order, outermost first:

    LAYER_ORDER = ("retry", "rate_limit", "circuit_breaker")

Rate limiting gates admission before the breaker is consulted, the breaker
gates execution, and retry repeats the whole admission + execution path.
Rejections from the breaker or limiter are not retried unless the policy
opts in, so callers see CircuitOpenError or RateLimitWaitTimeoutError as is.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Sequence, Tuple, TypeVar

from ...domain.exceptions import ErrorCategory, RateLimitedError, classify_error
from ..logging import SteadyCallLogger, logging_context
from .backoff import BackoffPolicy
from .cancellation import CancellationToken
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .rate_limiter import AdaptiveRateLimiter, RateLimiterConfig
from .registry import AnyRateLimiter, CircuitBreakerRegistry, LazyRegistry, RateLimiterRegistry
from .retry import execute_with_retry, execute_with_retry_sync

T = TypeVar("T")

LAYER_ORDER: Tuple[str, ...] = ("retry", "rate_limit", "circuit_breaker")

AsyncCall = Callable[[CancellationToken], Awaitable[Any]]
SyncCall = Callable[[CancellationToken], Any]


class Layer(ABC):
    """One cross-cutting behavior wrapped around an inner call."""

    kind: str = ""

    @abstractmethod
    def wrap(self, inner: AsyncCall) -> AsyncCall:
        """Wrap an async inner call."""

    @abstractmethod
    def wrap_sync(self, inner: SyncCall) -> SyncCall:
        """Wrap a blocking inner call."""


class RetryLayer(Layer):
    kind = "retry"

    def __init__(self, policy: Optional[BackoffPolicy] = None, name: Optional[str] = None):
        self.policy = policy if policy else BackoffPolicy.default()
        self.name = name

    def wrap(self, inner: AsyncCall) -> AsyncCall:
        async def call(token: CancellationToken) -> Any:
            return await execute_with_retry(
                lambda: inner(token), policy=self.policy, token=token, name=self.name,
            )
        return call

    def wrap_sync(self, inner: SyncCall) -> SyncCall:
        def call(token: CancellationToken) -> Any:
            return execute_with_retry_sync(
                lambda: inner(token), policy=self.policy, token=token, name=self.name,
            )
        return call


class RateLimitLayer(Layer):
    """
    Waits for a token before each call.

    When the inner call raises RateLimitedError with a ``retry_after`` and the
    limiter is adaptive, the upstream hint is fed back into the limiter.
    """

    kind = "rate_limit"

    def __init__(self, limiter: AnyRateLimiter):
        self.limiter = limiter

    def _observe(self, error: RateLimitedError) -> None:
        if error.retry_after is not None and isinstance(self.limiter, AdaptiveRateLimiter):
            self.limiter.on_rate_limit_error(error.retry_after)

    def wrap(self, inner: AsyncCall) -> AsyncCall:
        async def call(token: CancellationToken) -> Any:
            await self.limiter.wait(token)
            try:
                return await inner(token)
            except RateLimitedError as e:
                self._observe(e)
                raise
        return call

    def wrap_sync(self, inner: SyncCall) -> SyncCall:
        def call(token: CancellationToken) -> Any:
            self.limiter.wait_sync(token)
            try:
                return inner(token)
            except RateLimitedError as e:
                self._observe(e)
                raise
        return call


class CircuitBreakerLayer(Layer):
    kind = "circuit_breaker"

    def __init__(self, breaker: CircuitBreaker):
        self.breaker = breaker

    def wrap(self, inner: AsyncCall) -> AsyncCall:
        async def call(token: CancellationToken) -> Any:
            return await self.breaker.call(lambda: inner(token))
        return call

    def wrap_sync(self, inner: SyncCall) -> SyncCall:
        def call(token: CancellationToken) -> Any:
            return self.breaker.call_sync(lambda: inner(token))
        return call


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Point-in-time view of a chain's call statistics."""
    name: str
    calls: int
    successes: int
    failures: int
    failures_by_category: Dict[str, int] = field(default_factory=dict)
    total_latency: float = 0.0
    max_latency: float = 0.0
    last_error_type: Optional[str] = None

    @property
    def average_latency(self) -> float:
        return self.total_latency / self.calls if self.calls else 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "calls": self.calls,
            "successes": self.successes,
            "failures": self.failures,
            "failures_by_category": dict(self.failures_by_category),
            "average_latency_ms": round(self.average_latency * 1000, 3),
            "max_latency_ms": round(self.max_latency * 1000, 3),
            "last_error_type": self.last_error_type,
        }


class OperationTelemetry:
    """Failure and latency counters for one dependency, lock-protected."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._calls = 0
        self._successes = 0
        self._failures = 0
        self._by_category: Dict[str, int] = {}
        self._total_latency = 0.0
        self._max_latency = 0.0
        self._last_error_type: Optional[str] = None

    def record(self, latency: float, error: Optional[BaseException] = None) -> None:
        with self._lock:
            self._calls += 1
            self._total_latency += latency
            self._max_latency = max(self._max_latency, latency)
            if error is None:
                self._successes += 1
                return
            self._failures += 1
            category = classify_error(error).value
            self._by_category[category] = self._by_category.get(category, 0) + 1
            self._last_error_type = type(error).__name__

    def snapshot(self) -> TelemetrySnapshot:
        with self._lock:
            return TelemetrySnapshot(
                name=self.name,
                calls=self._calls,
                successes=self._successes,
                failures=self._failures,
                failures_by_category=dict(self._by_category),
                total_latency=self._total_latency,
                max_latency=self._max_latency,
                last_error_type=self._last_error_type,
            )


class ResilienceChain:
    """
    Ordered layers for one dependency, composed around caller-supplied calls.

    Example:
        >>> chain = factory.chain_for("stripe")
        >>> charge = await chain.execute(lambda: gateway.charge(amount))
    """

    def __init__(self, name: str, layers: Sequence[Layer]):
        self.name = name
        self.layers: Tuple[Layer, ...] = tuple(layers)
        self.telemetry = OperationTelemetry(name)
        self.logger = SteadyCallLogger.get_instance()

    @property
    def order(self) -> Tuple[str, ...]:
        """Layer kinds, outermost first."""
        return tuple(layer.kind for layer in self.layers)

    def _compose(self, operation: Callable[[], Awaitable[T]]) -> AsyncCall:
        async def innermost(token: CancellationToken) -> Any:
            return await operation()

        call: AsyncCall = innermost
        for layer in reversed(self.layers):
            call = layer.wrap(call)
        return call

    def _compose_sync(self, operation: Callable[[], T]) -> SyncCall:
        def innermost(token: CancellationToken) -> Any:
            return operation()

        call: SyncCall = innermost
        for layer in reversed(self.layers):
            call = layer.wrap_sync(call)
        return call

    def _record(self, started: float, error: Optional[BaseException]) -> None:
        latency = time.perf_counter() - started
        self.telemetry.record(latency, error)
        if error is not None and classify_error(error) != ErrorCategory.APPLICATION:
            with logging_context(operation="resilient_call_failed"):
                self.logger.warning(
                    f"Resilient call to {self.name} failed",
                    extra={
                        "dependency": self.name,
                        "error_type": type(error).__name__,
                        "category": classify_error(error).value,
                        "latency_ms": round(latency * 1000, 3),
                    },
                )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        token: Optional[CancellationToken] = None,
    ) -> T:
        """
        Run an async remote call through every layer.

        Args:
            operation: Zero-argument coroutine function performing the call
            token: Cancellation token for retry and rate-limit waits

        Returns:
            The operation's result
        """
        token = token if token else CancellationToken.background()
        started = time.perf_counter()
        try:
            result = await self._compose(operation)(token)
        except Exception as e:
            self._record(started, e)
            raise
        self._record(started, None)
        return result

    def execute_sync(
        self,
        operation: Callable[[], T],
        token: Optional[CancellationToken] = None,
    ) -> T:
        """Run a blocking remote call through every layer."""
        token = token if token else CancellationToken.background()
        started = time.perf_counter()
        try:
            result = self._compose_sync(operation)(token)
        except Exception as e:
            self._record(started, e)
            raise
        self._record(started, None)
        return result

    def bind(self, operation: Callable[[], Awaitable[T]]) -> "ResilientOperation[T]":
        """Fix the remote call, producing a reusable ResilientOperation."""
        return ResilientOperation(self, operation)

    def protect(self, func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """
        Decorator running every call of an async function through the chain.

        Example:
            >>> @chain.protect
            ... async def get_accounts(access_token):
            ...     return await plaid.accounts(access_token)
        """
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await self.execute(lambda: func(*args, **kwargs))

        return wrapper

    def protect_sync(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Decorator running every call of a blocking function through the chain."""
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            return self.execute_sync(lambda: func(*args, **kwargs))

        return wrapper

    def __repr__(self) -> str:
        return f"<ResilienceChain {self.name} order={'>'.join(self.order)}>"


class ResilientOperation(Generic[T]):
    """
    A remote call bound to a dependency's chain.

    Immutable after construction and safe to await from many tasks at once;
    only the components inside the chain keep mutable state.
    """

    __slots__ = ("_chain", "_operation")

    def __init__(self, chain: ResilienceChain, operation: Callable[[], Awaitable[T]]):
        self._chain = chain
        self._operation = operation

    @property
    def name(self) -> str:
        return self._chain.name

    @property
    def chain(self) -> ResilienceChain:
        return self._chain

    async def __call__(self, token: Optional[CancellationToken] = None) -> T:
        return await self._chain.execute(self._operation, token)


class ResilienceFactory:
    """
    Builds and caches one chain per dependency.

    Breakers and limiters come from the injected registries, so a chain and
    any direct user of the same dependency share one breaker and one limiter.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        limiters: RateLimiterRegistry,
        policies: Optional[Dict[str, BackoffPolicy]] = None,
        default_policy: Optional[BackoffPolicy] = None,
        layer_order: Sequence[str] = LAYER_ORDER,
    ):
        unknown = set(layer_order) - set(LAYER_ORDER)
        if unknown:
            raise ValueError(f"unknown layer kinds: {sorted(unknown)}")
        self.breakers = breakers
        self.limiters = limiters
        self.policies = dict(policies or {})
        self.default_policy = default_policy
        self.layer_order = tuple(layer_order)
        self._chains: LazyRegistry[ResilienceChain] = LazyRegistry()

    def build_layers(
        self,
        name: str,
        policy: Optional[BackoffPolicy] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        rate_limit: Optional[RateLimiterConfig] = None,
        layers: Optional[Sequence[str]] = None,
    ) -> Tuple[Layer, ...]:
        """Instantiate the layers for ``name`` in the requested order."""
        built = []
        for kind in (layers if layers is not None else self.layer_order):
            if kind == "retry":
                chosen = policy or self.policies.get(name) or self.default_policy
                built.append(RetryLayer(chosen, name=name))
            elif kind == "rate_limit":
                built.append(RateLimitLayer(self.limiters.get(name, rate_limit)))
            elif kind == "circuit_breaker":
                built.append(CircuitBreakerLayer(self.breakers.get(name, breaker_config)))
            else:
                raise ValueError(f"unknown layer kind: {kind}")
        return tuple(built)

    def chain_for(
        self,
        name: str,
        policy: Optional[BackoffPolicy] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        rate_limit: Optional[RateLimiterConfig] = None,
        layers: Optional[Sequence[str]] = None,
    ) -> ResilienceChain:
        """
        Chain for ``name``, built on first request and reused afterwards.

        Overrides only apply to the call that builds the chain.
        """
        return self._chains.get_or_create(
            name,
            lambda: ResilienceChain(
                name, self.build_layers(name, policy, breaker_config, rate_limit, layers),
            ),
        )

    def get_all(self) -> Dict[str, ResilienceChain]:
        return self._chains.get_all()
