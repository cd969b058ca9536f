"""
talos_provisioner/utils/ratelimit.py

Rate limiters deciding how long a failed record waits before it is retried:
 - ItemExponentialFailureRateLimiter: per-key delay that doubles on every
   consecutive failure, up to a ceiling.
 - BucketRateLimiter: a token bucket shared by every key, capping the total
   retry pressure across all records.
 - MaxOfRateLimiter: the longest delay of several limiters.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Protocol


class RateLimiter(Protocol):
    def when(self, key: str) -> float:
        """Record a failure for `key` and return the delay before its retry."""
        ...

    def forget(self, key: str) -> None:
        """Clear the failure history of `key` after a successful pass."""
        ...


class ItemExponentialFailureRateLimiter:
    def __init__(self, base_delay: float, max_delay: float) -> None:
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("need 0 < base_delay <= max_delay")
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: Dict[str, int] = {}

    def when(self, key: str) -> float:
        exponent = self._failures.get(key, 0)
        self._failures[key] = exponent + 1
        # Past 2**64 the ceiling has long been reached.
        if exponent > 64:
            return self._max_delay
        return min(self._base_delay * (2**exponent), self._max_delay)

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)


class BucketRateLimiter:
    """
    Token bucket refilled at `qps` tokens per second holding at most `burst`
    tokens. Each retry reserves one token; a retry that finds the bucket empty
    is delayed until its token has been refilled.
    """

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0 or burst < 1:
            raise ValueError("need qps > 0 and burst >= 1")
        self._qps = qps
        self._burst = float(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, key: str) -> float:
        now = self._clock()
        refill = (now - self._last) * self._qps
        self._tokens = min(self._burst, self._tokens + refill)
        self._last = now
        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self._qps

    def forget(self, key: str) -> None:
        return None


class MaxOfRateLimiter:
    def __init__(self, *limiters: RateLimiter) -> None:
        self._limiters = limiters

    def when(self, key: str) -> float:
        return max(limiter.when(key) for limiter in self._limiters)

    def forget(self, key: str) -> None:
        for limiter in self._limiters:
            limiter.forget(key)
