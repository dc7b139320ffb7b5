"""
Retry primitive for outbound index calls
========================================

A single ``call_with_retry`` parameterised by :class:`RetryPolicy`. The
zero-retry policy (``RetryPolicy.none()``) is how callers say "no retry";
there is no second code path.

Backoff is exponential with full jitter::

    delay = uniform(0, min(base_delay * 2 ** attempt, max_delay))

and is only slept between attempts, never before the first one.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from pymilvus.exceptions import MilvusUnavailableException

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({408, 429})


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 0.25
    max_delay: float = 4.0

    @classmethod
    def none(cls) -> "RetryPolicy":
        return cls(max_retries=0, base_delay=0.0, max_delay=0.0)


def backoff_delay(attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """Full-jitter delay before retry number ``attempt + 1`` (``attempt`` is 0-based)."""
    cap = min(policy.base_delay * (2 ** attempt), policy.max_delay)
    if cap <= 0:
        return 0.0
    return (rng or random).uniform(0, cap)


def status_of(exc: BaseException) -> Optional[int]:
    """Best-effort status code carried by an exception."""
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable(exc: BaseException) -> bool:
    """Network errors, timeouts and 408/429/5xx are retryable; nothing else is."""
    if isinstance(exc, (asyncio.TimeoutError, OSError, MilvusUnavailableException)):
        return True
    status = status_of(exc)
    if status is None:
        return False
    return status in RETRYABLE_STATUS or 500 <= status < 600


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    timeout: Optional[float] = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    label: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run ``fn`` with a per-attempt timeout and the policy's retry budget.

    :param fn: Zero-argument coroutine factory; called once per attempt.
    :param timeout: Seconds allowed per attempt. Expiry counts as retryable.
    :returns: The first successful result.
    :raises: The last exception once the budget is exhausted, or the first
        non-retryable one.
    """
    attempt = 0
    while True:
        try:
            if timeout is not None:
                return await asyncio.wait_for(fn(), timeout)
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_retries or not retryable(exc):
                raise
            delay = backoff_delay(attempt, policy, rng)
            logger.warning(
                "%s failed (attempt %d/%d, err=%s); retrying in %.2fs",
                label,
                attempt + 1,
                policy.max_retries + 1,
                exc,
                delay,
            )
            attempt += 1
            await sleep(delay)


__all__ = [
    "RetryPolicy",
    "backoff_delay",
    "status_of",
    "is_retryable",
    "call_with_retry",
]
