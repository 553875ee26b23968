# Folder: ci-triage/agent/retry.py
#
# One retry policy shared by the GitHub client and the model client.
# Exponential backoff with jitter, capped, and a predicate that decides
# which errors are worth another attempt.

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Args:
        max_attempts: total attempts including the first one
        base_delay: seconds before the first retry, doubled per attempt
        max_delay: ceiling for the exponential part
        jitter: up to this many random seconds added to every delay
        retryable: errors for which this returns False are re-raised at once
        sleep: injectable for tests
    """
    max_attempts: int = 3
    base_delay: float = 0.4
    max_delay: float = 8.0
    jitter: float = 0.3
    retryable: Callable[[Exception], bool] = lambda e: True
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 0-based failed attempt"""
        exp = min(self.max_delay, self.base_delay * (2 ** attempt))
        return exp + random.uniform(0, self.jitter)

    def call(self, fn: Callable[[], T], label: str = "call",
             on_retry: Optional[Callable[[int, Exception], None]] = None) -> T:
        """
        Run fn until it succeeds, raises a non-retryable error,
        or max_attempts is used up (then the last error is raised).
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return fn()
            except Exception as e:
                if not self.retryable(e):
                    logger.debug(f"{label}: non-retryable error: {e}")
                    raise
                if attempt == attempts - 1:
                    logger.warning(f"{label}: giving up after {attempts} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{label}: attempt {attempt + 1}/{attempts} failed ({e}), "
                    f"retrying in {delay:.2f}s"
                )
                if on_retry:
                    on_retry(attempt, e)
                self.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover
