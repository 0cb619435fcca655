"""
Bounded retries for deployment health checks.

A health endpoint that refuses one connection right after a traffic shift
should not fail a whole rollout. CommandDeploymentTarget wraps its URL check in
call_with_retry; everything else in the pipeline fails fast.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryableError(Exception):
    """A health check outcome worth asking again about (refused, timed out, 5xx)."""


@dataclass
class RetryConfig:
    """
    How many times to check and how long to wait in between.

    Waits double from ``min_wait`` (scaled by ``backoff_factor``) up to
    ``max_wait``. With ``jitter`` each wait is drawn from the upper half of
    that value so parallel rollouts do not check in lockstep.
    """
    max_attempts: int = 3
    backoff_factor: float = 1.0
    min_wait: float = 1.0
    max_wait: float = 30.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,)

    def wait_before(self, retry_index: int) -> float:
        return calculate_backoff(
            retry_index, self.backoff_factor, self.min_wait, self.max_wait, self.jitter
        )


def calculate_backoff(
    attempt: int,
    backoff_factor: float,
    min_wait: float,
    max_wait: float,
    jitter: bool
) -> float:
    """Seconds to wait after the zero-based ``attempt`` failed."""
    wait = min(max_wait, min_wait * backoff_factor * 2 ** attempt)
    if jitter:
        wait *= random.uniform(0.5, 1.0)
    return wait


def call_with_retry(
    func: Callable[[], T],
    config: RetryConfig,
    sleep: Optional[Callable[[float], None]] = None
) -> T:
    """
    Call ``func`` until it returns or ``config.max_attempts`` calls failed.

    Exceptions outside ``config.retryable_exceptions`` propagate on the spot.

    Args:
        func: Zero-argument callable, usually a bound health check method
        config: Attempt count and backoff
        sleep: Replaces ``time.sleep``; tests pass a recorder

    Raises:
        ValueError: If ``config.max_attempts`` is below 1
    """
    if config.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    sleep = sleep or time.sleep
    label = getattr(func, "__qualname__", repr(func))
    attempt = 0

    while True:
        try:
            return func()
        except config.retryable_exceptions as e:
            attempt += 1
            if attempt == config.max_attempts:
                logger.error(f"{label} still failing after {attempt} attempts: {e}")
                raise
            wait = config.wait_before(attempt - 1)
            logger.warning(f"{label} failed ({e}); attempt {attempt + 1} in {wait:.2f}s")
            sleep(wait)


HEALTH_CHECK_RETRY = RetryConfig(
    max_attempts=3,
    min_wait=1.0,
    max_wait=10.0,
    retryable_exceptions=(ConnectionError, TimeoutError, RetryableError)
)
