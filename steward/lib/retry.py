"""
Bounded retry with exponential backoff for external platform calls.

Only retryable error kinds (PlatformUnavailable) are retried. Everything
else (NotFound, ValidationError, ...) propagates on the first attempt.
Per-call timeouts are enforced by the adapters themselves (HTTP client
timeout, subprocess timeout) and surface here as PlatformUnavailable.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from steward.lib.errors import StewardError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry settings for platform calls.

    delay before attempt n+1 = min(base_delay * backoff_factor ** (n - 1), max_delay)
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)


def call_with_retry(
    operation: Callable[[], T],
    name: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run operation, retrying retryable errors up to policy.max_attempts.

    Raises the last error once attempts are exhausted.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            if attempt > 1:
                logger.info(f"[RETRY] {name} succeeded on attempt {attempt}")
            return result
        except StewardError as e:
            if not e.retryable:
                raise
            if attempt == attempts:
                logger.warning(f"[RETRY] {name} failed after {attempts} attempts: {e.message}")
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                f"[RETRY] {name} attempt {attempt}/{attempts} failed ({e.message}), "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)
