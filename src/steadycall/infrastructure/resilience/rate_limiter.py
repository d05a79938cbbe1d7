"""
Token bucket rate limiting.

A bucket of capacity ``burst`` refills at ``rate_per_second`` tokens per
second and every admitted call consumes one token. Rates below one request
per second are valid (0.1 = one request every ten seconds).

Limiters are process-local. Admission can be immediate (allow), blocking
(wait, bounded by ``wait_timeout`` and the caller's cancellation token) or
scheduled (reserve).
"""

import asyncio
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ...domain.exceptions import (
    CancellationError,
    RateLimitExceededError,
    RateLimitWaitTimeoutError,
    UnknownTierError,
)
from ..logging import SteadyCallLogger, logging_context
from .cancellation import CancellationToken


@dataclass(frozen=True)
class RateLimiterConfig:
    """
    Configuration for one token bucket.

    Attributes:
        rate_per_second: Refill rate in tokens per second (> 0, may be fractional)
        burst: Bucket capacity (>= 1)
        wait_timeout: Longest wait() will block in seconds (0 = no limit)
    """
    rate_per_second: float
    burst: int = 1
    wait_timeout: float = 0.0

    def __post_init__(self):
        if not self.rate_per_second > 0:
            raise ValueError("rate_per_second must be > 0")
        if self.burst < 1:
            raise ValueError("burst must be >= 1")
        if self.wait_timeout < 0:
            raise ValueError("wait_timeout must be >= 0")


class Reservation:
    """
    A granted (or refused) claim on future tokens.

    ``time_to_act`` is the monotonic time at which the tokens become
    available. Cancelling before then returns them to the bucket.
    ``not_before`` can push the act time later without changing what
    cancel() gives back.
    """

    def __init__(
        self,
        ok: bool,
        bucket: "TokenBucket",
        tokens: int = 0,
        time_to_act: float = 0.0,
    ):
        self.ok = ok
        self._bucket = bucket
        self.tokens = tokens
        self.time_to_act = time_to_act
        self.not_before = 0.0
        self._cancelled = False

    def delay(self, now: Optional[float] = None) -> float:
        """Seconds to wait before acting; inf when the reservation was refused."""
        if not self.ok:
            return math.inf
        if now is None:
            now = self._bucket.clock()
        return max(0.0, self.time_to_act - now, self.not_before - now)

    def cancel(self) -> None:
        """Give unused tokens back to the bucket, as far as possible."""
        if not self.ok or self._cancelled:
            return
        self._cancelled = True
        self._bucket._restore(self)


class TokenBucket:
    """
    Thread-safe token bucket.

    The bucket starts full. Reservations may drive the token count negative,
    which is how waiting callers queue up behind each other.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate = float(rate)
        self.burst = int(burst)
        self.clock = clock
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()
        self._last_event = self._last

    def _advance(self, now: float) -> Tuple[float, float]:
        last = min(self._last, now)
        tokens = self._tokens + (now - last) * self.rate
        return now, min(tokens, float(self.burst))

    def _duration_from_tokens(self, tokens: float) -> float:
        return tokens / self.rate

    def reserve_n(self, n: int = 1, max_wait: float = math.inf, now: Optional[float] = None) -> Reservation:
        """
        Claim ``n`` tokens if they will be available within ``max_wait`` seconds.

        A refused reservation (``ok`` False) leaves the bucket untouched.
        """
        with self._lock:
            if now is None:
                now = self.clock()
            now, tokens = self._advance(now)

            tokens -= n
            wait = self._duration_from_tokens(-tokens) if tokens < 0 else 0.0
            ok = n <= self.burst and wait <= max_wait

            if not ok:
                return Reservation(False, self)

            reservation = Reservation(True, self, tokens=n, time_to_act=now + wait)
            self._last = now
            self._tokens = tokens
            self._last_event = reservation.time_to_act
            return reservation

    def reserve(self) -> Reservation:
        """Claim one token, however far in the future it becomes available."""
        return self.reserve_n(1)

    def allow_n(self, n: int = 1) -> bool:
        """Consume ``n`` tokens only if they are available right now."""
        return self.reserve_n(n, max_wait=0.0).ok

    def allow(self) -> bool:
        """Consume one token only if it is available right now."""
        return self.allow_n(1)

    @property
    def tokens(self) -> float:
        """Tokens currently available (negative while callers are queued)."""
        with self._lock:
            return self._advance(self.clock())[1]

    def _restore(self, reservation: Reservation) -> None:
        with self._lock:
            now = self.clock()
            if reservation.time_to_act < now:
                return

            # Tokens reserved after this one are still owed to their holders
            restore = reservation.tokens - (self._last_event - reservation.time_to_act) * self.rate
            if restore <= 0:
                return

            now, tokens = self._advance(now)
            self._tokens = min(tokens + restore, float(self.burst))
            self._last = now

            if reservation.time_to_act == self._last_event:
                previous = reservation.time_to_act - self._duration_from_tokens(reservation.tokens)
                if previous >= now:
                    self._last_event = previous


class RateLimiter:
    """
    Rate limiter for one dependency.

    Example:
        >>> limiter = RateLimiter(RateLimiterConfig(rate_per_second=10, burst=5), name="plaid")
        >>> await limiter.wait(token)   # blocks until a token is free
        >>> limiter.allow()             # non-blocking check
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config
        self._clock = clock
        self._bucket = TokenBucket(config.rate_per_second, config.burst, clock=clock)
        self.logger = SteadyCallLogger.get_instance()

    def allow(self) -> bool:
        """Consume a token if one is available right now."""
        return self._bucket.allow()

    def reserve(self) -> Reservation:
        """Reserve the next token for callers that schedule work themselves."""
        return self._bucket.reserve()

    def try_acquire(self) -> None:
        """
        Consume a token or fail immediately.

        Raises:
            RateLimitExceededError: No token available right now
        """
        if not self._bucket.allow():
            raise RateLimitExceededError(self.name)

    @property
    def tokens(self) -> float:
        return self._bucket.tokens

    def _wait_budget(self, token: CancellationToken) -> Optional[float]:
        budgets = []
        if self.config.wait_timeout > 0:
            budgets.append(self.config.wait_timeout)
        remaining = token.remaining()
        if remaining is not None:
            budgets.append(remaining)
        return min(budgets) if budgets else None

    def _reserve_within_budget(self, token: CancellationToken) -> Reservation:
        error = token.error()
        if error is not None:
            raise error

        budget = self._wait_budget(token)
        now = self._clock()
        reservation = self._bucket.reserve_n(
            1, max_wait=budget if budget is not None else math.inf, now=now,
        )

        if not reservation.ok:
            # Report how long the wait would have been without consuming a token
            required = max(0.0, (1 - self._bucket.tokens) / self._bucket.rate)
            with logging_context(operation="rate_limit_wait_timeout"):
                self.logger.warning(
                    f"Rate limit wait would exceed budget: {self.name}",
                    extra={
                        "rate_limiter": self.name,
                        "required_wait_seconds": round(required, 3),
                        "budget_seconds": budget,
                    },
                )
            raise RateLimitWaitTimeoutError(self.name, required, budget or 0.0)

        return reservation

    def _log_wait(self, delay: float) -> None:
        with logging_context(operation="rate_limit_wait"):
            self.logger.debug(
                f"Rate limit reached, waiting: {self.name}",
                extra={"rate_limiter": self.name, "wait_seconds": round(delay, 3)},
            )

    async def wait(self, token: Optional[CancellationToken] = None) -> None:
        """
        Block until a token is available.

        Raises:
            RateLimitWaitTimeoutError: The wait would exceed wait_timeout or the
                token's deadline; no token is consumed
            CancellationError: The token was cancelled while waiting
        """
        token = token if token else CancellationToken.background()
        reservation = self._reserve_within_budget(token)
        delay = reservation.delay(self._clock())
        if delay <= 0:
            return

        self._log_wait(delay)
        try:
            await token.sleep(delay)
        except (CancellationError, asyncio.CancelledError):
            reservation.cancel()
            raise

    def wait_sync(self, token: Optional[CancellationToken] = None) -> None:
        """Blocking counterpart of wait()."""
        token = token if token else CancellationToken.background()
        reservation = self._reserve_within_budget(token)
        delay = reservation.delay(self._clock())
        if delay <= 0:
            return

        self._log_wait(delay)
        try:
            token.sleep_sync(delay)
        except CancellationError:
            reservation.cancel()
            raise

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "rate_per_second": self.config.rate_per_second,
            "burst": self.config.burst,
            "wait_timeout": self.config.wait_timeout,
            "tokens": round(self.tokens, 3),
        }


class AdaptiveRateLimiter:
    """
    Rate limiter that backs off when the dependency signals overload.

    Call on_rate_limit_error() when the upstream answers "slow down"
    (HTTP 429 with Retry-After); subsequent waits first sleep out the
    backoff window, then take a token as usual.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.base_config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._limiter = RateLimiter(config, name=name, clock=clock)
        self._backoff_until = 0.0
        self.logger = SteadyCallLogger.get_instance()

    @property
    def config(self) -> RateLimiterConfig:
        return self.base_config

    def on_rate_limit_error(self, retry_after: float) -> None:
        """Pause admissions for ``retry_after`` seconds from now."""
        with self._lock:
            self._backoff_until = self._clock() + max(0.0, retry_after)

        with logging_context(operation="rate_limit_backoff"):
            self.logger.warning(
                f"Upstream throttled {self.name}, backing off",
                extra={"rate_limiter": self.name, "retry_after_seconds": retry_after},
            )

    def backoff_remaining(self) -> float:
        """Seconds left in the current backoff window (0 when none)."""
        with self._lock:
            return max(0.0, self._backoff_until - self._clock())

    def _current(self) -> Tuple[RateLimiter, float]:
        with self._lock:
            return self._limiter, max(0.0, self._backoff_until - self._clock())

    def allow(self) -> bool:
        limiter, backoff = self._current()
        if backoff > 0:
            return False
        return limiter.allow()

    def reserve(self) -> Reservation:
        """Reserve the next token; its delay covers any active backoff window."""
        limiter, backoff = self._current()
        reservation = limiter.reserve()
        if reservation.ok and backoff > 0:
            reservation.not_before = self._clock() + backoff
        return reservation

    def try_acquire(self) -> None:
        if not self.allow():
            raise RateLimitExceededError(self.name)

    @property
    def tokens(self) -> float:
        limiter, _ = self._current()
        return limiter.tokens

    async def wait(self, token: Optional[CancellationToken] = None) -> None:
        """Sleep out any backoff window, then wait for a token."""
        token = token if token else CancellationToken.background()
        limiter, backoff = self._current()
        if backoff > 0:
            await token.sleep(backoff)
        await limiter.wait(token)

    def wait_sync(self, token: Optional[CancellationToken] = None) -> None:
        token = token if token else CancellationToken.background()
        limiter, backoff = self._current()
        if backoff > 0:
            token.sleep_sync(backoff)
        limiter.wait_sync(token)

    def reset(self) -> None:
        """Clear the backoff window and recreate the bucket from base config."""
        with self._lock:
            self._limiter = RateLimiter(self.base_config, name=self.name, clock=self._clock)
            self._backoff_until = 0.0

    def get_stats(self) -> dict:
        limiter, backoff = self._current()
        stats = limiter.get_stats()
        stats["backoff_remaining"] = round(backoff, 3)
        return stats


class MultiTierRateLimiter:
    """
    Limiters keyed by service tier (e.g. "free", "pro", "enterprise").

    Tiers are declared up front with add_tier(); using an unknown tier is
    an error rather than an unlimited pass.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._limiters: Dict[str, RateLimiter] = {}

    def add_tier(self, tier: str, config: RateLimiterConfig) -> None:
        """Register (or replace) the limiter for a tier."""
        with self._lock:
            self._limiters[tier] = RateLimiter(config, name=f"tier:{tier}", clock=self._clock)

    def get(self, tier: str) -> RateLimiter:
        with self._lock:
            limiter = self._limiters.get(tier)
        if limiter is None:
            raise UnknownTierError(tier)
        return limiter

    def allow(self, tier: str) -> bool:
        return self.get(tier).allow()

    async def wait(self, tier: str, token: Optional[CancellationToken] = None) -> None:
        await self.get(tier).wait(token)

    def wait_sync(self, tier: str, token: Optional[CancellationToken] = None) -> None:
        self.get(tier).wait_sync(token)

    def tiers(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._limiters)


class KeyedRateLimiter:
    """
    Limiters created lazily per key (user ID, API key, client IP).

    The key space is bounded: at most ``max_keys`` limiters are kept
    (least recently used evicted first) and limiters idle for longer than
    ``idle_ttl`` seconds are dropped. An evicted key starts again with a
    full bucket.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        max_keys: int = 10000,
        idle_ttl: float = 600.0,
        name: str = "keyed",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_keys < 1:
            raise ValueError("max_keys must be >= 1")
        self.name = name
        self.config = config
        self.max_keys = max_keys
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._limiters: "OrderedDict[str, Tuple[RateLimiter, float]]" = OrderedDict()
        self.evictions = 0
        self.logger = SteadyCallLogger.get_instance()

    def _evict_idle(self, now: float) -> None:
        if self.idle_ttl <= 0:
            return
        while self._limiters:
            _, (_, last_used) = next(iter(self._limiters.items()))
            if now - last_used <= self.idle_ttl:
                break
            self._limiters.popitem(last=False)
            self.evictions += 1

    def get(self, key: str) -> RateLimiter:
        """Limiter for ``key``, created on first use."""
        with self._lock:
            now = self._clock()
            entry = self._limiters.get(key)
            if entry is not None:
                self._limiters[key] = (entry[0], now)
                self._limiters.move_to_end(key)
                return entry[0]

            self._evict_idle(now)
            limiter = RateLimiter(self.config, name=f"{self.name}:{key}", clock=self._clock)
            self._limiters[key] = (limiter, now)
            if len(self._limiters) > self.max_keys:
                evicted, _ = self._limiters.popitem(last=False)
                self.evictions += 1
                self.logger.debug(
                    f"Evicted least recently used limiter: {evicted}",
                    extra={"rate_limiter": self.name, "key": evicted},
                )
            return limiter

    def allow(self, key: str) -> bool:
        return self.get(key).allow()

    async def wait(self, key: str, token: Optional[CancellationToken] = None) -> None:
        await self.get(key).wait(token)

    def wait_sync(self, key: str, token: Optional[CancellationToken] = None) -> None:
        self.get(key).wait_sync(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._limiters)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._limiters
