"""Requeue rate limiters for the work queue.

A rate limiter answers "how long should this key wait before it is
retried?".  Two strategies are combined by default:

- per-key exponential backoff, reset by ``forget()`` after a successful pass
- an overall token bucket so a burst of failures cannot hammer the API server

Usage::

    limiter = default_controller_rate_limiter(BackoffConfig(base_delay_seconds=0.01))
    delay = limiter.when("default/example")   # 0.01, then 0.02, 0.04, ...
    limiter.forget("default/example")          # back to base delay
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field


class BackoffConfig(BaseModel):
    """Tunables for requeue backoff."""

    base_delay_seconds: float = Field(0.005, gt=0)
    """Delay before the first retry of a failing key."""

    max_delay_seconds: float = Field(1000.0, gt=0)
    """Upper bound on the per-key exponential delay."""

    qps: float = Field(10.0, gt=0)
    """Sustained requeue rate across all keys."""

    burst: int = Field(100, ge=1)
    """Requeues allowed back-to-back before the bucket starts delaying."""


@runtime_checkable
class RateLimiter(Protocol):
    """Protocol for requeue rate limiters."""

    def when(self, key: str) -> float:
        """Return the delay (seconds) before *key* should be retried."""
        ...

    def forget(self, key: str) -> None:
        """Stop tracking *key*; its next failure starts from scratch."""
        ...

    def num_requeues(self, key: str) -> int:
        """Return how many times *key* has been requeued since last forget."""
        ...


class ItemExponentialFailureRateLimiter:
    """Per-key ``base * 2**failures`` delay, capped at ``max_delay``.

    Thread-safe via a lock on all state mutations.
    """

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self._base = base_delay
        self._max = max_delay
        self._lock = threading.Lock()
        self._failures: dict[str, int] = {}

    def when(self, key: str) -> float:
        with self._lock:
            exp = self._failures.get(key, 0)
            self._failures[key] = exp + 1

        # 2**exp overflows float range long before it matters.
        if exp > 62:
            return self._max
        return min(self._base * (2 ** exp), self._max)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class BucketRateLimiter:
    """Token bucket shared by all keys.

    Each ``when()`` reserves one token; when the bucket is empty the
    returned delay is how long until the reserved token is refilled.
    """

    def __init__(
        self,
        qps: float,
        burst: int,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._qps = qps
        self._burst = burst
        self._clock = _clock or time.monotonic
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = self._clock()

    def when(self, key: str) -> float:
        now = self._clock()
        with self._lock:
            elapsed = max(0.0, now - self._last)
            self._tokens = min(float(self._burst), self._tokens + elapsed * self._qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._qps

    def forget(self, key: str) -> None:
        """Bucket state is global, nothing to forget per key."""

    def num_requeues(self, key: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Delays by the worst (longest) answer of its limiters."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("MaxOfRateLimiter needs at least one limiter")
        self._limiters = limiters

    def when(self, key: str) -> float:
        return max(limiter.when(key) for limiter in self._limiters)

    def forget(self, key: str) -> None:
        for limiter in self._limiters:
            limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return max(limiter.num_requeues(key) for limiter in self._limiters)


def default_controller_rate_limiter(
    config: BackoffConfig | None = None,
    _clock: Callable[[], float] | None = None,
) -> MaxOfRateLimiter:
    """Exponential per-key backoff combined with an overall token bucket."""
    config = config or BackoffConfig()
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(config.base_delay_seconds, config.max_delay_seconds),
        BucketRateLimiter(config.qps, config.burst, _clock=_clock),
    )
