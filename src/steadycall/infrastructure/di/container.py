"""Dependency injection container for SteadyCall."""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from ..config.config_loader import ConfigLoader
from ..config.config_models import SteadyCallConfig
from ..config.presets import PROVIDER_RATE_LIMITS, PROVIDER_RETRY_POLICIES
from ..logging import SteadyCallLogger
from ..resilience import (
    BackoffPolicy,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    KeyedRateLimiter,
    MultiTierRateLimiter,
    RateLimiterConfig,
    RateLimiterRegistry,
    ResilienceChain,
    ResilienceFactory,
    StateChangeQueue,
)


@dataclass
class ResolvedDependency:
    """Effective settings for one dependency and where each came from."""
    name: str
    policy: BackoffPolicy
    policy_source: str
    breaker: CircuitBreakerConfig
    breaker_source: str
    rate_limit: Optional[RateLimiterConfig]
    rate_limit_source: str
    adaptive: bool
    layers: Tuple[str, ...]


@dataclass
class ResilienceContainer:
    """
    Dependency injection container for SteadyCall.

    Assembles the logger, registries, state change queue and chain factory
    from one configuration. Created once at application startup and passed
    to whatever talks to remote dependencies.

    Example:
        >>> container = ResilienceContainer.create()
        >>> stripe = container.chain("stripe")
        >>> charge = await stripe.execute(lambda: gateway.charge(amount))
    """

    # Configuration
    config: SteadyCallConfig

    # Infrastructure
    logger: SteadyCallLogger
    state_changes: StateChangeQueue
    breakers: CircuitBreakerRegistry
    limiters: RateLimiterRegistry
    factory: ResilienceFactory
    tiers: MultiTierRateLimiter
    keyed: Optional[KeyedRateLimiter] = None

    @classmethod
    def create(
        cls,
        config_path: Optional[str] = None,
        config: Optional[SteadyCallConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ResilienceContainer":
        """
        Create and wire all dependencies.

        Args:
            config_path: Optional path to configuration file
            config: Already loaded configuration (skips ConfigLoader)
            clock: Monotonic clock handed to breakers and limiters

        Returns:
            ResilienceContainer with all dependencies wired
        """
        if config is None:
            config = ConfigLoader.load(config_path)

        logger = SteadyCallLogger.configure(
            level=config.logging.level,
            log_file=Path(config.logging.file) if config.logging.file else None,
            console=config.logging.console,
            rotation=config.logging.rotation,
            retention_days=config.logging.retention_days,
        )

        state_changes = StateChangeQueue(maxsize=config.monitor.queue_size)
        if config.monitor.enabled:
            state_changes.start()

        breakers = CircuitBreakerRegistry(
            default_config=config.defaults.circuit_breaker.to_config(on_state_change=state_changes),
            configs={
                name: dep.circuit_breaker.to_config(on_state_change=state_changes)
                for name, dep in config.dependencies.items()
                if dep.circuit_breaker is not None
            },
            clock=clock,
        )

        limiters = RateLimiterRegistry(
            default_config=config.defaults.rate_limit.to_config() if config.defaults.rate_limit else None,
            adaptive=config.defaults.rate_limit.adaptive if config.defaults.rate_limit else False,
            clock=clock,
        )

        policies: Dict[str, BackoffPolicy] = {}
        if config.use_presets:
            policies.update({name: preset() for name, preset in PROVIDER_RETRY_POLICIES.items()})
        policies.update({
            name: dep.retry.to_policy()
            for name, dep in config.dependencies.items()
            if dep.retry is not None
        })

        factory = ResilienceFactory(
            breakers,
            limiters,
            policies=policies,
            default_policy=config.defaults.retry.to_policy(),
            layer_order=config.layer_order,
        )

        tiers = MultiTierRateLimiter(clock=clock)
        for tier, tier_config in config.tiers.items():
            tiers.add_tier(tier, tier_config.to_config())

        keyed = None
        if config.keyed is not None:
            keyed = KeyedRateLimiter(
                config.keyed.to_config(),
                max_keys=config.keyed.max_keys,
                idle_ttl=config.keyed.idle_ttl,
                clock=clock,
            )

        logger.debug(
            "Resilience container created",
            extra={
                "dependencies": list(config.dependency_names()),
                "tiers": list(config.tiers),
                "use_presets": config.use_presets,
            },
        )

        return cls(
            config=config,
            logger=logger,
            state_changes=state_changes,
            breakers=breakers,
            limiters=limiters,
            factory=factory,
            tiers=tiers,
            keyed=keyed,
        )

    def _rate_limit_for(self, name: str) -> Tuple[Optional[RateLimiterConfig], bool, str]:
        dep = self.config.dependency(name)
        if dep.rate_limit is not None:
            return dep.rate_limit.to_config(), dep.rate_limit.adaptive, "config"
        if self.config.use_presets and name in PROVIDER_RATE_LIMITS:
            return PROVIDER_RATE_LIMITS[name], False, "preset"
        defaults = self.config.defaults.rate_limit
        if defaults is not None:
            return defaults.to_config(), defaults.adaptive, "defaults"
        return None, False, "none"

    def resolve(self, name: str) -> ResolvedDependency:
        """Effective settings for ``name`` after applying config, presets and defaults."""
        dep = self.config.dependency(name)

        if dep.retry is not None:
            policy, policy_source = dep.retry.to_policy(), "config"
        elif self.config.use_presets and name in PROVIDER_RETRY_POLICIES:
            policy, policy_source = PROVIDER_RETRY_POLICIES[name](), "preset"
        else:
            policy, policy_source = self.config.defaults.retry.to_policy(), "defaults"

        if dep.circuit_breaker is not None:
            breaker, breaker_source = dep.circuit_breaker.to_config(), "config"
        else:
            breaker, breaker_source = self.config.defaults.circuit_breaker.to_config(), "defaults"

        rate_limit, adaptive, rate_source = self._rate_limit_for(name)

        layers = tuple(dep.layers if dep.layers is not None else self.config.layer_order)
        if rate_limit is None:
            layers = tuple(kind for kind in layers if kind != "rate_limit")

        return ResolvedDependency(
            name=name,
            policy=policy,
            policy_source=policy_source,
            breaker=breaker,
            breaker_source=breaker_source,
            rate_limit=rate_limit,
            rate_limit_source=rate_source,
            adaptive=adaptive,
            layers=layers,
        )

    def chain(self, name: str) -> ResilienceChain:
        """
        Chain for a dependency, built on first use.

        Dependencies without any rate limit (no section, no preset, no
        default) get a chain without the rate limit layer.
        """
        resolved = self.resolve(name)
        if resolved.rate_limit is not None:
            # Creates the limiter with the right flavor before the factory asks for it
            self.limiters.get(name, resolved.rate_limit, adaptive=resolved.adaptive)
        return self.factory.chain_for(
            name,
            rate_limit=resolved.rate_limit,
            layers=resolved.layers,
        )

    def known_dependencies(self) -> Tuple[str, ...]:
        """Configured dependencies plus preset providers when presets are on."""
        names = set(self.config.dependencies)
        if self.config.use_presets:
            names |= set(PROVIDER_RATE_LIMITS) | set(PROVIDER_RETRY_POLICIES)
        return tuple(sorted(names))

    def shutdown(self) -> None:
        """Stop the state change thread and deliver anything still queued."""
        self.state_changes.stop()
        self.state_changes.drain()

    def __repr__(self) -> str:
        """String representation."""
        return f"<ResilienceContainer: {len(self.known_dependencies())} dependencies>"
