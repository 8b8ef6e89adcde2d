"""
Retry policy — bounded exponential backoff at the provider-call boundary.

Only transient ProviderErrors are retried. Delays double per attempt up
to ``max_delay`` with up to 30% random jitter added on top.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from converge.core.errors import ProviderError, ProviderOperationFailed, ResourceNotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How provider calls are retried.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay.
        jitter: Fraction of the delay added as random jitter.
        sleep: Sleep function (swapped out in tests).
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.3
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)

    def run(self, fn: Callable[[], T], *, operation: str, address: str) -> T:
        """Call ``fn`` until it succeeds, fails permanently, or attempts run out.

        ResourceNotFound is passed through untouched; callers decide what a
        missing object means for their operation.

        Raises:
            ProviderOperationFailed: On a non-transient error or exhaustion.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except ResourceNotFound:
                raise
            except ProviderError as e:
                if not e.transient or attempt >= self.max_attempts:
                    raise ProviderOperationFailed(operation, address, e, attempt) from e
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s %s: transient error (attempt %d/%d), retrying in %.2fs: %s",
                    operation,
                    address,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                self.sleep(delay)
