"""Unit tests for the retry policy."""

from typing import List

import pytest

from traefik_dns.errors import (
    InvalidRecordError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
)
from traefik_dns.retry import RetryAborted, RetryPolicy, call_with_retry


class Flaky:
    """Callable that raises the queued errors, then returns "ok"."""

    def __init__(self, *errors: ProviderError):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryPolicy:
    """Tests for delay computation."""

    def test_backoff_is_exponential_and_capped(self) -> None:
        """Test delays double up to max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert [policy.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_non_retryable_error_gives_up(self) -> None:
        """Test permanent errors are not retried."""
        assert RetryPolicy().next_delay(1, InvalidRecordError("bad"), 0.0) is None

    def test_retry_after_is_used_exactly(self) -> None:
        """Test a rate limit's retry_after replaces the backoff."""
        policy = RetryPolicy(base_delay=1.0)
        assert policy.next_delay(1, RateLimitedError("slow down", retry_after=7.5), 0.0) == 7.5

    def test_total_wait_budget(self) -> None:
        """Test a delay that would exceed max_total_wait gives up."""
        policy = RetryPolicy(max_total_wait=10.0)
        assert policy.next_delay(1, RateLimitedError("x", retry_after=11.0), 0.0) is None
        assert policy.next_delay(2, TransientProviderError("x"), 9.5) is None


class TestCallWithRetry:
    """Tests for the retry loop."""

    def test_success_after_transient_failures(self) -> None:
        """Test transient errors are retried until success."""
        sleeps: List[float] = []
        fn = Flaky(TransientProviderError("503"), TransientProviderError("503"))
        result, attempts = call_with_retry(fn, RetryPolicy(base_delay=1.0), sleep=sleeps.append)
        assert result == "ok"
        assert attempts == 3
        assert sleeps == [1.0, 2.0]

    def test_attempts_are_bounded(self) -> None:
        """Test retrying stops at max_attempts and the last error propagates."""
        sleeps: List[float] = []
        fn = Flaky(*[TransientProviderError("down") for _ in range(10)])
        with pytest.raises(TransientProviderError) as exc:
            call_with_retry(fn, RetryPolicy(max_attempts=3), sleep=sleeps.append)
        assert fn.calls == 3
        assert exc.value.attempts == 3
        assert len(sleeps) == 2

    def test_permanent_error_is_not_retried(self) -> None:
        """Test a permanent failure is raised after one attempt."""
        fn = Flaky(InvalidRecordError("bad"))
        with pytest.raises(InvalidRecordError):
            call_with_retry(fn, RetryPolicy(), sleep=lambda s: None)
        assert fn.calls == 1

    def test_rate_limited_waits_retry_after(self) -> None:
        """Test the sleep equals the provider's Retry-After."""
        sleeps: List[float] = []
        fn = Flaky(RateLimitedError("429", retry_after=3.0))
        call_with_retry(fn, RetryPolicy(), sleep=sleeps.append)
        assert sleeps == [3.0]

    def test_shutdown_aborts_retrying(self) -> None:
        """Test a stop request during backoff ends the loop."""
        fn = Flaky(TransientProviderError("down"), TransientProviderError("down"))
        with pytest.raises(RetryAborted) as exc:
            call_with_retry(fn, RetryPolicy(), sleep=lambda s: None, should_stop=lambda: True)
        assert fn.calls == 1
        assert exc.value.attempts == 1
