"""
Per-dependency registries.

Guarantee at most one breaker and one limiter per dependency name for
everything sharing the registry object. Registries are plain objects created
by the DI container and passed to whoever needs them, not module globals.
"""

import threading
import time
from typing import Callable, Dict, Generic, List, Mapping, Optional, TypeVar, Union

from ..logging import SteadyCallLogger
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerStats
from .rate_limiter import AdaptiveRateLimiter, RateLimiter, RateLimiterConfig

V = TypeVar("V")

AnyRateLimiter = Union[RateLimiter, AdaptiveRateLimiter]


class LazyRegistry(Generic[V]):
    """Name -> instance map with double-checked, lock-protected creation."""

    def __init__(self):
        self._items: Dict[str, V] = {}
        self._lock = threading.Lock()

    def get_or_create(self, name: str, factory: Callable[[], V]) -> V:
        """
        Return the instance for ``name``, building it with ``factory`` once.

        The unlocked lookup serves the common case; the locked re-check makes
        concurrent first use build exactly one instance.
        """
        item = self._items.get(name)
        if item is not None:
            return item

        with self._lock:
            # Double-check after acquiring the lock
            item = self._items.get(name)
            if item is None:
                item = factory()
                self._items[name] = item
            return item

    def get_all(self) -> Dict[str, V]:
        """Copy of every registered instance by name."""
        with self._lock:
            return dict(self._items)

    def __contains__(self, name: str) -> bool:
        return name in self._items

    def __len__(self) -> int:
        return len(self._items)


class CircuitBreakerRegistry(LazyRegistry[CircuitBreaker]):
    """
    One CircuitBreaker per dependency name.

    Example:
        >>> breakers = CircuitBreakerRegistry()
        >>> breakers.get("stripe") is breakers.get("stripe")
        True
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        configs: Optional[Mapping[str, CircuitBreakerConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            default_config: Config for names without a specific entry
            configs: Per-dependency configs
            clock: Clock handed to every breaker
        """
        super().__init__()
        self.default_config = default_config
        self.configs = dict(configs or {})
        self._clock = clock
        self.logger = SteadyCallLogger.get_instance()

    def get(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """
        Breaker for ``name``, created on first use.

        ``config`` only applies when this call creates the breaker.
        """
        def create() -> CircuitBreaker:
            chosen = config or self.configs.get(name) or self.default_config
            self.logger.debug(
                f"Creating circuit breaker: {name}",
                extra={"circuit_breaker": name},
            )
            return CircuitBreaker(name, chosen, clock=self._clock)

        return self.get_or_create(name, create)

    def get_stats(self) -> List[CircuitBreakerStats]:
        """Stats for every registered breaker, sorted by name."""
        return [breaker.get_stats() for _, breaker in sorted(self.get_all().items())]

    def reset_all(self) -> None:
        """Force every breaker back to CLOSED."""
        for breaker in self.get_all().values():
            breaker.reset()


class RateLimiterRegistry(LazyRegistry[AnyRateLimiter]):
    """
    One rate limiter per dependency name.

    Names without an explicit config fall back to ``default_config``; when
    there is neither, get() raises KeyError rather than inventing a rate.
    """

    def __init__(
        self,
        default_config: Optional[RateLimiterConfig] = None,
        configs: Optional[Mapping[str, RateLimiterConfig]] = None,
        adaptive: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            default_config: Config for names without a specific entry
            configs: Per-dependency configs
            adaptive: Build AdaptiveRateLimiter instances instead of RateLimiter
            clock: Clock handed to every limiter
        """
        super().__init__()
        self.default_config = default_config
        self.configs = dict(configs or {})
        self.adaptive = adaptive
        self._clock = clock

    def get(
        self,
        name: str,
        config: Optional[RateLimiterConfig] = None,
        adaptive: Optional[bool] = None,
    ) -> AnyRateLimiter:
        """Limiter for ``name``, created on first use."""
        def create() -> AnyRateLimiter:
            chosen = config or self.configs.get(name) or self.default_config
            if chosen is None:
                raise KeyError(f"no rate limit configured for {name}")
            use_adaptive = self.adaptive if adaptive is None else adaptive
            cls = AdaptiveRateLimiter if use_adaptive else RateLimiter
            return cls(chosen, name=name, clock=self._clock)

        return self.get_or_create(name, create)
