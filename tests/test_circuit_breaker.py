"""
Tests for circuit breaker pattern.

Comprehensive tests for circuit breaker behavior. Timing uses an injected
fake clock so state transitions are deterministic.
"""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from steadycall.domain.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
    TooManyRequestsError,
)
from steadycall.infrastructure.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
)


async def fail():
    raise ConnectionError("Service unavailable")


async def succeed():
    return "success"


class TestCircuitBreaker:
    """Test suite for circuit breaker."""

    @pytest.mark.asyncio
    async def test_closed_state_allows_calls(self):
        """Test that CLOSED state allows calls through."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=3)
        )

        @breaker.protect
        async def successful_call():
            return "success"

        result = await successful_call()

        assert result == "success"
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, clock):
        """Test that circuit opens on the k-th consecutive failure."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=3),
            clock=clock,
        )

        call_count = 0

        @breaker.protect
        async def failing_call():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("Service unavailable")

        for i in range(2):
            with pytest.raises(ConnectionError):
                await failing_call()
        assert breaker.state == CircuitBreakerState.CLOSED

        with pytest.raises(ConnectionError):
            await failing_call()

        assert breaker.state == CircuitBreakerState.OPEN
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_open_state_blocks_calls(self, clock):
        """Test that OPEN state rejects calls without invoking them."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=2, timeout=60),
            clock=clock,
        )

        for i in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(fail)

        invoked = False

        async def should_not_run():
            nonlocal invoked
            invoked = True

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(should_not_run)

        assert invoked is False
        assert exc_info.value.name == "test_service"
        assert exc_info.value.retry_after == pytest.approx(60.0)
        assert isinstance(exc_info.value, CircuitBreakerError)

    @pytest.mark.asyncio
    async def test_documented_timing_scenario(self, clock):
        """Test threshold 3, success threshold 1, 50ms timeout: reject at 10ms, probe at 60ms."""
        breaker = CircuitBreaker(
            name="ledger",
            config=CircuitBreakerConfig(failure_threshold=3, success_threshold=1, timeout=0.05),
            clock=clock,
        )

        for _ in range(3):
            with pytest.raises(ConnectionError):
                await breaker.call(fail)
        assert breaker.state == CircuitBreakerState.OPEN

        clock.advance(0.01)
        invoked = []

        async def tracked():
            invoked.append(clock())
            return "ok"

        with pytest.raises(CircuitOpenError):
            await breaker.call(tracked)
        assert invoked == []

        clock.advance(0.05)
        assert await breaker.call(tracked) == "ok"
        assert len(invoked) == 1
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_lazy_transition_to_half_open(self, clock):
        """Test that OPEN becomes HALF_OPEN only when observed after the timeout."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=1, timeout=30),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        clock.advance(29)
        assert breaker.state == CircuitBreakerState.OPEN

        clock.advance(1)
        assert breaker.state == CircuitBreakerState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        """Test that a failing probe returns the breaker to OPEN with a fresh timeout."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=1, timeout=10),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        clock.advance(10)

        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        assert breaker.state == CircuitBreakerState.OPEN
        clock.advance(5)
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

    @pytest.mark.asyncio
    async def test_half_open_closes_after_success_threshold(self, clock):
        """Test that success_threshold consecutive probes close the circuit."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=1, success_threshold=2, timeout=10),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        clock.advance(10)

        await breaker.call(succeed)
        assert breaker.state == CircuitBreakerState.HALF_OPEN

        await breaker.call(succeed)
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_limits_probes_in_flight(self, clock):
        """Test that probes beyond max_requests are rejected with TooManyRequestsError."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=1, max_requests=1, timeout=10),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        clock.advance(10)

        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_trial():
            started.set()
            await release.wait()
            return "recovered"

        probe = asyncio.create_task(breaker.call(slow_trial))
        await started.wait()

        with pytest.raises(TooManyRequestsError) as exc_info:
            await breaker.call(succeed)
        assert exc_info.value.max_requests == 1

        release.set()
        assert await probe == "recovered"

    @pytest.mark.asyncio
    async def test_task_cancellation_frees_probe_slot(self, clock):
        """Test that a cancelled probe does not hold its HALF_OPEN slot."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=1, max_requests=1, timeout=10),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        clock.advance(10)

        started = asyncio.Event()

        async def hanging_probe():
            started.set()
            await asyncio.sleep(10)

        probe = asyncio.create_task(breaker.call(hanging_probe))
        await started.wait()
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert await breaker.call(succeed) == "success"

    @pytest.mark.asyncio
    async def test_interval_resets_closed_counts(self, clock):
        """Test that CLOSED counts reset when the interval elapses."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=3, interval=60),
            clock=clock,
        )

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(fail)
        assert breaker.counts.consecutive_failures == 2

        clock.advance(60)
        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.counts.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_stale_generation_result_ignored(self, clock):
        """Test that a result from before a state change does not touch the new counts."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=1, timeout=60),
            clock=clock,
        )

        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_success():
            started.set()
            await release.wait()
            return "late"

        slow = asyncio.create_task(breaker.call(slow_success))
        await started.wait()

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        assert breaker.state == CircuitBreakerState.OPEN

        release.set()
        assert await slow == "late"

        assert breaker.state == CircuitBreakerState.OPEN
        assert breaker.counts.total_successes == 0

    @pytest.mark.asyncio
    async def test_exclude_exceptions(self, clock):
        """Test that excluded exceptions don't count as failures."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=2, exclude_exceptions=(ValueError,)),
            clock=clock,
        )

        async def bad_input():
            raise ValueError("Invalid input")

        for _ in range(5):
            with pytest.raises(ValueError):
                await breaker.call(bad_input)

        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.counts.total_failures == 0

    @pytest.mark.asyncio
    async def test_is_failure_predicate(self, clock):
        """Test that a predicate decides which errors trip the breaker."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(
                failure_threshold=1,
                is_failure=lambda e: isinstance(e, ConnectionError),
            ),
            clock=clock,
        )

        async def not_found():
            raise KeyError("payment not found")

        with pytest.raises(KeyError):
            await breaker.call(not_found)
        assert breaker.state == CircuitBreakerState.CLOSED

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        assert breaker.state == CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, clock):
        """Test that a success between failures prevents opening."""
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=3),
            clock=clock,
        )

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(fail)
        await breaker.call(succeed)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(fail)

        assert breaker.state == CircuitBreakerState.CLOSED


class TestCircuitBreakerCallbacksAndFallback:
    """Test suite for state change callbacks, fallback and reset."""

    @pytest.mark.asyncio
    async def test_state_change_callback(self, clock):
        """Test that every transition reaches the listener with (name, from, to)."""
        transitions = []
        breaker = CircuitBreaker(
            name="plaid",
            config=CircuitBreakerConfig(
                failure_threshold=1,
                success_threshold=1,
                timeout=5,
                on_state_change=lambda name, old, new: transitions.append((name, old, new)),
            ),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        clock.advance(5)
        await breaker.call(succeed)

        assert transitions == [
            ("plaid", CircuitBreakerState.CLOSED, CircuitBreakerState.OPEN),
            ("plaid", CircuitBreakerState.OPEN, CircuitBreakerState.HALF_OPEN),
            ("plaid", CircuitBreakerState.HALF_OPEN, CircuitBreakerState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_calls(self, clock):
        """Test that a raising listener is logged, not propagated."""
        def broken_listener(name, old, new):
            raise RuntimeError("alerting down")

        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(failure_threshold=1, on_state_change=broken_listener),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        assert breaker.state == CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_fallback_used_when_open(self, clock):
        """Test that the fallback runs only for structural rejections."""
        breaker = CircuitBreaker(
            name="rates",
            config=CircuitBreakerConfig(failure_threshold=1, timeout=60),
            clock=clock,
        )

        async def cached_rates():
            return "cached"

        with pytest.raises(ConnectionError):
            await breaker.call_with_fallback(fail, cached_rates)
        assert breaker.counts.total_failures == 0  # counts reset on opening
        assert breaker.state == CircuitBreakerState.OPEN

        assert await breaker.call_with_fallback(succeed, cached_rates) == "cached"

    def test_fallback_sync(self, clock):
        """Test the blocking fallback path."""
        breaker = CircuitBreaker(
            name="rates",
            config=CircuitBreakerConfig(failure_threshold=1, timeout=60),
            clock=clock,
        )

        def failing():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            breaker.call_with_fallback_sync(failing, lambda: "cached")

        assert breaker.call_with_fallback_sync(lambda: "live", lambda: "cached") == "cached"

    @pytest.mark.asyncio
    async def test_manual_reset(self, clock):
        """Test that reset() forces CLOSED and notifies the listener."""
        transitions = []
        breaker = CircuitBreaker(
            name="test_service",
            config=CircuitBreakerConfig(
                failure_threshold=1,
                on_state_change=lambda name, old, new: transitions.append((old, new)),
            ),
            clock=clock,
        )

        with pytest.raises(ConnectionError):
            await breaker.call(fail)
        breaker.reset()

        assert breaker.state == CircuitBreakerState.CLOSED
        assert await breaker.call(succeed) == "success"
        assert transitions[-1] == (CircuitBreakerState.OPEN, CircuitBreakerState.CLOSED)

    @pytest.mark.asyncio
    async def test_get_stats(self, clock):
        """Test stats snapshot contents."""
        breaker = CircuitBreaker(
            name="stats_service",
            config=CircuitBreakerConfig(failure_threshold=5),
            clock=clock,
        )

        await breaker.call(succeed)
        with pytest.raises(ConnectionError):
            await breaker.call(fail)

        stats = breaker.get_stats()

        assert stats.name == "stats_service"
        assert stats.state == CircuitBreakerState.CLOSED
        assert stats.total_requests == 2
        assert stats.total_successes == 1
        assert stats.total_failures == 1
        assert stats.consecutive_failures == 1
        assert stats.to_dict()["state"] == "closed"


class TestCircuitBreakerSync:
    """Test suite for the blocking API."""

    def test_protect_sync_opens_and_blocks(self, clock):
        """Test that protect_sync trips and rejects like the async path."""
        breaker = CircuitBreaker(
            name="sync_service",
            config=CircuitBreakerConfig(failure_threshold=2, timeout=30),
            clock=clock,
        )
        calls = 0

        @breaker.protect_sync
        def lookup():
            nonlocal calls
            calls += 1
            raise TimeoutError("slow")

        for _ in range(2):
            with pytest.raises(TimeoutError):
                lookup()

        with pytest.raises(CircuitOpenError):
            lookup()
        assert calls == 2

    def test_invalid_config_rejected(self):
        """Test configuration validation."""
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)
        with pytest.raises(ValueError):
            CircuitBreakerConfig(max_requests=0)


class TestCircuitBreakerThreads:
    """Test suite for concurrent use of one breaker from many threads."""

    def test_concurrent_failures_open_exactly_once(self, clock):
        """Test that racing failures produce a single CLOSED -> OPEN transition."""
        transitions = []
        breaker = CircuitBreaker(
            name="ledger",
            config=CircuitBreakerConfig(
                failure_threshold=5,
                timeout=60,
                on_state_change=lambda name, old, new: transitions.append((old, new)),
            ),
            clock=clock,
        )
        start = threading.Barrier(32)

        def refused():
            raise ConnectionError("refused")

        def worker():
            start.wait()
            try:
                breaker.call_sync(refused)
            except (ConnectionError, CircuitOpenError) as e:
                return type(e)
            return None

        with ThreadPoolExecutor(max_workers=32) as pool:
            outcomes = [f.result() for f in [pool.submit(worker) for _ in range(32)]]

        assert transitions == [(CircuitBreakerState.CLOSED, CircuitBreakerState.OPEN)]
        assert breaker.state == CircuitBreakerState.OPEN
        assert outcomes.count(ConnectionError) >= 5
        assert set(outcomes) <= {ConnectionError, CircuitOpenError}

    def test_concurrent_trial_calls_capped(self, clock):
        """Test that HALF_OPEN admits at most max_requests concurrent trial calls."""
        breaker = CircuitBreaker(
            name="ledger",
            config=CircuitBreakerConfig(
                failure_threshold=1, success_threshold=10, max_requests=2, timeout=5,
            ),
            clock=clock,
        )

        def refused():
            raise ConnectionError("refused")

        with pytest.raises(ConnectionError):
            breaker.call_sync(refused)
        clock.advance(5)

        release = threading.Event()
        in_flight = []

        def slow_trial():
            in_flight.append(1)
            release.wait(5)
            return "ok"

        def worker():
            try:
                return breaker.call_sync(slow_trial)
            except TooManyRequestsError:
                return "rejected"

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(worker) for _ in range(8)]
            deadline = time.monotonic() + 5
            while sum(f.done() for f in futures) < 6 and time.monotonic() < deadline:
                time.sleep(0.01)
            release.set()
            outcomes = [f.result() for f in futures]

        assert outcomes.count("rejected") == 6
        assert outcomes.count("ok") == 2
        assert len(in_flight) == 2
        assert breaker.state == CircuitBreakerState.HALF_OPEN
