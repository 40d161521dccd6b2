"""Bounded retry with exponential backoff for provider calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from .errors import ProviderError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether, and after how long, a failed call is retried.

    Attempts are capped at max_attempts and the summed waits at
    max_total_wait. A RateLimitedError carrying retry_after waits exactly
    that long instead of the computed backoff.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_total_wait: float = 120.0
    multiplier: float = 2.0

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))

    def next_delay(self, attempt: int, error: ProviderError, waited: float) -> Optional[float]:
        """Seconds to wait before the next attempt, or None to give up."""
        if not error.retryable or attempt >= self.max_attempts:
            return None
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            delay = float(error.retry_after)
        else:
            delay = self.backoff(attempt)
        if waited + delay > self.max_total_wait:
            return None
        return delay


class RetryAborted(ProviderError):
    """Retrying stopped because shutdown was requested."""

    kind = "aborted"


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] = lambda: False,
    what: str = "provider call",
) -> Tuple[T, int]:
    """Run fn under policy; return (result, attempts).

    Raises the last ProviderError once the policy gives up.
    """
    attempt = 0
    waited = 0.0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except ProviderError as e:
            e.attempts = attempt
            delay = policy.next_delay(attempt, e, waited)
            if delay is None:
                raise
            logger.warning(
                f"{what} failed ({e.kind}, attempt {attempt}/{policy.max_attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)
            waited += delay
            if should_stop():
                aborted = RetryAborted(f"{what}: shutdown requested while retrying ({e})")
                aborted.attempts = attempt
                raise aborted from e
