"""
Retry with capped exponential backoff.

Only errors that report themselves as transient are retried; anything
else propagates on the first failure.  The per-attempt timeout is
enforced by the operation itself (the subprocess timeout), so a timed
out attempt surfaces as a transient error and the next attempt runs.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait in between."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.3

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), with jitter."""
        delay = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    @classmethod
    def fixed(cls, retries: int, delay: float) -> RetryPolicy:
        """Constant delay between attempts."""
        return cls(max_retries=retries, initial_delay=delay, max_delay=delay, multiplier=1.0, jitter=0.0)


def is_transient(exc: BaseException) -> bool:
    return bool(getattr(exc, "transient", False))


def retry_operation(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy = RetryPolicy(),
    should_retry: Callable[[BaseException], bool] = is_transient,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation``, retrying transient failures.

    Args:
        operation: Zero-argument callable.
        policy: Attempt count and backoff.
        should_retry: Decides whether an exception is worth another attempt.
        on_retry: Called with (attempt, error, delay) before each wait.
        sleep: Injected for tests.
        label: Name used in log lines.

    Raises:
        The last exception once retries are exhausted, or the first
        non-retryable one.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            attempt += 1
            if attempt > policy.max_retries or not should_retry(e):
                if attempt > 1:
                    logger.warning("%s failed after %d attempt(s): %s", label, attempt, e)
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d): %s — retrying in %.1fs",
                label, attempt, policy.max_retries + 1, e, delay,
            )
            if on_retry:
                on_retry(attempt, e, delay)
            sleep(delay)
