"""Configuration data models using Pydantic."""

import builtins
from typing import Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, field_validator, model_validator

from ...domain import exceptions as domain_exceptions
from ..resilience.backoff import BackoffPolicy
from ..resilience.chain import LAYER_ORDER
from ..resilience.circuit_breaker import CircuitBreakerConfig, StateChangeListener
from ..resilience.rate_limiter import RateLimiterConfig


def resolve_error_class(name: str) -> Type[BaseException]:
    """
    Resolve an exception class by name.

    SteadyCall's domain exceptions are looked up first, then Python's
    builtin exceptions (ConnectionError, TimeoutError, OSError, ...).
    """
    for namespace in (domain_exceptions, builtins):
        candidate = getattr(namespace, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            return candidate
    raise ValueError(f"unknown exception class: {name}")


def _check_layers(layers: List[str]) -> List[str]:
    if any(kind not in LAYER_ORDER for kind in layers):
        raise ValueError(f"layers must be drawn from {list(LAYER_ORDER)}")
    if len(set(layers)) != len(layers):
        raise ValueError("layers must not repeat")
    return layers


class RetryConfigModel(BaseModel):
    """Retry logic configuration."""
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first attempt"
    )
    initial_interval: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Delay in seconds before the first retry"
    )
    max_interval: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Maximum delay in seconds between retries"
    )
    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Exponential backoff growth factor"
    )
    jitter: bool = Field(
        default=True,
        description="Add 0-30% random jitter to each delay"
    )
    retryable_errors: List[str] = Field(
        default_factory=list,
        description="Exception class names worth retrying (empty = all errors)"
    )

    @field_validator('retryable_errors')
    @classmethod
    def validate_retryable_errors(cls, v):
        """Ensure every name resolves to an exception class."""
        for name in v:
            resolve_error_class(name)
        return v

    @model_validator(mode='after')
    def validate_intervals(self):
        """Ensure the cap is not below the initial delay."""
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        return self

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_retries=self.max_retries,
            initial_interval=self.initial_interval,
            max_interval=self.max_interval,
            multiplier=self.multiplier,
            jitter=self.jitter,
            retryable_errors=tuple(resolve_error_class(n) for n in self.retryable_errors),
        )


class CircuitBreakerConfigModel(BaseModel):
    """Circuit breaker configuration."""
    max_requests: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Probe calls allowed in flight while half-open"
    )
    interval: float = Field(
        default=60.0,
        ge=0.0,
        le=3600.0,
        description="Seconds between count resets while closed (0 = never)"
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=3600.0,
        description="Seconds to stay open before probing"
    )
    failure_threshold: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Consecutive failures before opening circuit"
    )
    success_threshold: int = Field(
        default=2,
        ge=1,
        le=100,
        description="Consecutive probe successes to close circuit from half-open"
    )
    exclude_exceptions: List[str] = Field(
        default_factory=list,
        description="Exception class names that never count as failures"
    )

    @field_validator('exclude_exceptions')
    @classmethod
    def validate_exclude_exceptions(cls, v):
        """Ensure every name resolves to an exception class."""
        for name in v:
            resolve_error_class(name)
        return v

    def to_config(self, on_state_change: Optional[StateChangeListener] = None) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            max_requests=self.max_requests,
            interval=self.interval,
            timeout=self.timeout,
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            exclude_exceptions=tuple(resolve_error_class(n) for n in self.exclude_exceptions),
            on_state_change=on_state_change,
        )


class RateLimitConfigModel(BaseModel):
    """Token bucket configuration."""
    rate_per_second: float = Field(
        gt=0.0,
        description="Refill rate in requests per second (fractions allowed)"
    )
    burst: int = Field(
        default=1,
        ge=1,
        le=100000,
        description="Bucket capacity"
    )
    wait_timeout: float = Field(
        default=0.0,
        ge=0.0,
        le=3600.0,
        description="Longest a caller waits for a token in seconds (0 = no limit)"
    )
    adaptive: bool = Field(
        default=False,
        description="Back off when the dependency answers with rate-limit errors"
    )

    def to_config(self) -> RateLimiterConfig:
        return RateLimiterConfig(
            rate_per_second=self.rate_per_second,
            burst=self.burst,
            wait_timeout=self.wait_timeout,
        )


class DependencyConfig(BaseModel):
    """Per-dependency overrides; missing sections fall back to presets, then defaults."""
    retry: Optional[RetryConfigModel] = None
    circuit_breaker: Optional[CircuitBreakerConfigModel] = None
    rate_limit: Optional[RateLimitConfigModel] = None
    layers: Optional[List[str]] = Field(
        default=None,
        description="Layer kinds for this dependency, outermost first"
    )

    @field_validator('layers')
    @classmethod
    def validate_layers(cls, v):
        """Ensure layer kinds are known and unique."""
        return v if v is None else _check_layers(v)


class DefaultsConfig(BaseModel):
    """Settings applied to every dependency without its own section."""
    retry: RetryConfigModel = Field(default_factory=RetryConfigModel)
    circuit_breaker: CircuitBreakerConfigModel = Field(default_factory=CircuitBreakerConfigModel)
    rate_limit: Optional[RateLimitConfigModel] = Field(
        default=None,
        description="Rate limit for dependencies without one (None = no default limit)"
    )


class KeyedLimiterConfig(BaseModel):
    """Per-key (per-user, per-API-key) rate limiting."""
    rate_per_second: float = Field(default=10.0, gt=0.0)
    burst: int = Field(default=20, ge=1)
    wait_timeout: float = Field(default=0.0, ge=0.0)
    max_keys: int = Field(
        default=10000,
        ge=1,
        le=10000000,
        description="Most keys tracked before least recently used ones are evicted"
    )
    idle_ttl: float = Field(
        default=600.0,
        ge=0.0,
        description="Seconds a key may stay idle before eviction (0 = never)"
    )

    def to_config(self) -> RateLimiterConfig:
        return RateLimiterConfig(
            rate_per_second=self.rate_per_second,
            burst=self.burst,
            wait_timeout=self.wait_timeout,
        )


class MonitorConfig(BaseModel):
    """Circuit breaker monitoring configuration."""
    enabled: bool = Field(
        default=False,
        description="Run the state change delivery thread"
    )
    interval: float = Field(
        default=30.0,
        gt=0.0,
        le=3600.0,
        description="Seconds between breaker stats log lines"
    )
    queue_size: int = Field(
        default=1000,
        ge=1,
        le=100000,
        description="State change events buffered before dropping"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    file: str = Field(
        default="./steadycall.log",
        description="Log file path"
    )
    console: bool = Field(
        default=True,
        description="Enable console logging"
    )
    rotation: str = Field(
        default="daily",
        description="Log rotation strategy (daily, none)"
    )
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Number of days to retain logs"
    )

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return v

    @field_validator('rotation')
    @classmethod
    def validate_rotation(cls, v):
        """Ensure rotation strategy is valid."""
        valid_strategies = ["daily", "none"]
        v = v.lower()
        if v not in valid_strategies:
            raise ValueError(f"rotation must be one of {valid_strategies}")
        return v


class SteadyCallConfig(BaseModel):
    """Complete SteadyCall configuration."""
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    dependencies: Dict[str, DependencyConfig] = Field(default_factory=dict)
    use_presets: bool = Field(
        default=True,
        description="Fill missing dependency sections from provider presets"
    )
    layer_order: List[str] = Field(
        default_factory=lambda: list(LAYER_ORDER),
        description="Default layer kinds, outermost first"
    )
    tiers: Dict[str, RateLimitConfigModel] = Field(
        default_factory=dict,
        description="Rate limits per service tier"
    )
    keyed: Optional[KeyedLimiterConfig] = None
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        """Pydantic configuration."""
        extra = "forbid"  # Forbid extra fields
        validate_assignment = True  # Validate on assignment

    @field_validator('layer_order')
    @classmethod
    def validate_layer_order(cls, v):
        """Ensure layer kinds are known and unique."""
        return _check_layers(v)

    def dependency(self, name: str) -> DependencyConfig:
        """Section for ``name``; an empty one when the file has none."""
        return self.dependencies.get(name) or DependencyConfig()

    def dependency_names(self) -> Tuple[str, ...]:
        return tuple(sorted(self.dependencies))

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        import yaml
        return yaml.dump(self.model_dump(), default_flow_style=False, sort_keys=False)
