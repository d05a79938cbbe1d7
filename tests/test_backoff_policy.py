"""
Tests for the exponential backoff policy.
"""

import pytest

from steadycall.domain.exceptions import (
    NetworkError,
    OperationTimeoutError,
    ServiceUnavailableError,
)
from steadycall.infrastructure.resilience import BackoffPolicy
from steadycall.infrastructure.resilience.backoff import JITTER_FACTOR


class TestBackoffDelays:
    """Test suite for delay computation."""

    def test_default_policy_values(self):
        """Test that the default policy matches the documented defaults."""
        policy = BackoffPolicy.default()

        assert policy.max_retries == 3
        assert policy.initial_interval == 1.0
        assert policy.max_interval == 30.0
        assert policy.multiplier == 2.0
        assert policy.jitter is True
        assert policy.retryable_errors == ()

    def test_exponential_growth_without_jitter(self):
        """Test delays double from the initial interval."""
        policy = BackoffPolicy(initial_interval=0.5, multiplier=2.0, max_interval=100, jitter=False)

        delays = [policy.compute_delay(n) for n in range(1, 5)]

        assert delays == [0.5, 1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        """Test that delays never exceed max_interval without jitter."""
        policy = BackoffPolicy(initial_interval=1.0, multiplier=3.0, max_interval=5.0, jitter=False)

        assert policy.compute_delay(1) == 1.0
        assert policy.compute_delay(2) == 3.0
        assert policy.compute_delay(3) == 5.0
        assert policy.compute_delay(10) == 5.0

    def test_attempt_zero_has_no_delay(self):
        """Test that attempt numbers below 1 yield no delay."""
        policy = BackoffPolicy()

        assert policy.compute_delay(0) == 0.0
        assert policy.compute_delay(-1) == 0.0

    def test_jitter_stays_within_bounds(self):
        """Test jittered delay lies in [base, base * 1.3]."""
        policy = BackoffPolicy(initial_interval=1.0, max_interval=8.0, jitter=True)

        for attempt in range(1, 8):
            base = policy.base_delay(attempt)
            for _ in range(50):
                delay = policy.compute_delay(attempt)
                assert base <= delay <= base * (1 + JITTER_FACTOR) + 1e-9

    def test_jitter_never_exceeds_cap_plus_thirty_percent(self):
        """Test the absolute upper bound on any delay."""
        policy = BackoffPolicy(initial_interval=2.0, max_interval=4.0, multiplier=10.0)

        for _ in range(100):
            assert policy.compute_delay(5) <= 4.0 * 1.3 + 1e-9

    def test_multiplier_of_one_is_constant(self):
        """Test that multiplier 1.0 gives a constant delay."""
        policy = BackoffPolicy(initial_interval=0.25, multiplier=1.0, jitter=False)

        assert {policy.compute_delay(n) for n in range(1, 6)} == {0.25}


class TestBackoffValidation:
    """Test suite for policy validation."""

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": -1},
        {"initial_interval": 0},
        {"initial_interval": 2.0, "max_interval": 1.0},
        {"multiplier": 0.5},
    ])
    def test_invalid_policies_rejected(self, kwargs):
        """Test that nonsensical settings raise ValueError."""
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)

    def test_policy_is_immutable(self):
        """Test that policies cannot be changed after creation."""
        policy = BackoffPolicy()

        with pytest.raises(AttributeError):
            policy.max_retries = 10


class TestRetryableClassification:
    """Test suite for is_retryable()."""

    def test_none_is_not_retryable(self):
        """Test that a missing error is never retryable."""
        assert BackoffPolicy().is_retryable(None) is False

    def test_empty_list_retries_everything(self):
        """Test that an empty retryable list treats every error as retryable."""
        policy = BackoffPolicy()

        assert policy.is_retryable(ValueError("bad"))
        assert policy.is_retryable(ServiceUnavailableError("503"))

    def test_listed_errors_only(self):
        """Test that only listed error types are retryable."""
        policy = BackoffPolicy(retryable_errors=(OperationTimeoutError, ServiceUnavailableError))

        assert policy.is_retryable(OperationTimeoutError("slow"))
        assert policy.is_retryable(ServiceUnavailableError("503"))
        assert not policy.is_retryable(NetworkError("reset"))
        assert not policy.is_retryable(ValueError("bad input"))

    def test_wrapped_errors_match_through_cause(self):
        """Test that an error wrapping a retryable cause is retryable."""
        policy = BackoffPolicy(retryable_errors=(OperationTimeoutError,))

        try:
            try:
                raise OperationTimeoutError("upstream timed out")
            except OperationTimeoutError as inner:
                raise RuntimeError("gateway call failed") from inner
        except RuntimeError as outer:
            wrapped = outer

        assert policy.is_retryable(wrapped)

    def test_classifier_overrides_list(self):
        """Test that a classifier predicate takes precedence."""
        policy = BackoffPolicy(
            retryable_errors=(OperationTimeoutError,),
            classifier=lambda e: "retry" in str(e),
        )

        assert policy.is_retryable(ValueError("please retry"))
        assert not policy.is_retryable(OperationTimeoutError("slow"))
