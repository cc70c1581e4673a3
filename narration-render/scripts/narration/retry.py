#!/usr/bin/env python3
from __future__ import annotations

"""Retry-with-backoff for storage reads that may lag behind recent writes.

Freshly written objects can answer 404/403 for a short while. Those responses
and transport failures are retried with capped exponential backoff; every
other error is treated as permanent and propagates on the first attempt.
"""

import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, TypeVar

from .errors import (
    ERROR_KIND_FORBIDDEN,
    ERROR_KIND_NETWORK,
    ERROR_KIND_NOT_FOUND,
    ERROR_KIND_TIMEOUT,
    RetryExhaustedError,
    classify_render_exception,
)

if TYPE_CHECKING:
    from .logging_utils import Logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    multiplier: float = 2.0
    jitter_ms: int = 0
    retry_on_not_found: bool = True
    retry_on_forbidden: bool = True
    retry_on_transport: bool = True

    def delay_seconds(self, attempt: int, *, rng: Optional[random.Random] = None) -> float:
        """Backoff before the retry that follows `attempt` (1-based)."""
        base = (self.base_delay_ms / 1000.0) * (max(1.0, self.multiplier) ** max(0, attempt - 1))
        delay = min(self.max_delay_ms / 1000.0, base)
        if self.jitter_ms > 0:
            delay += (rng or random).uniform(0.0, self.jitter_ms / 1000.0)
        return max(0.0, delay)

    def is_retryable(self, exc: BaseException) -> bool:
        kind = classify_render_exception(exc)
        if kind == ERROR_KIND_NOT_FOUND:
            return self.retry_on_not_found
        if kind == ERROR_KIND_FORBIDDEN:
            return self.retry_on_forbidden
        if kind in {ERROR_KIND_NETWORK, ERROR_KIND_TIMEOUT}:
            return self.retry_on_transport
        return False


def fetch_with_backoff(
    fetch: Callable[[], T],
    *,
    locator: str,
    policy: RetryPolicy,
    logger: Optional["Logger"] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `fetch` until it succeeds or the policy budget runs out.

    Raises `RetryExhaustedError` (chained from the last failure) once every
    attempt failed with a retryable error. Non-retryable errors are re-raised
    unchanged.
    """
    attempts = max(1, int(policy.max_attempts))
    last_exc: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            value = fetch()
            if attempt > 1 and logger is not None:
                logger.debug("storage_retry_recovered", locator=locator, attempt=attempt)
            return value
        except Exception as exc:  # noqa: BLE001
            if not policy.is_retryable(exc):
                raise
            last_exc = exc
            if attempt >= attempts:
                break
            delay_s = policy.delay_seconds(attempt)
            if logger is not None:
                logger.debug(
                    "storage_retry_wait",
                    locator=locator,
                    attempt=attempt,
                    max_attempts=attempts,
                    error_kind=classify_render_exception(exc),
                    delay_s=round(delay_s, 3),
                )
            sleep(delay_s)
    assert last_exc is not None
    raise RetryExhaustedError(locator=locator, attempts=attempts, last_error=last_exc) from last_exc
