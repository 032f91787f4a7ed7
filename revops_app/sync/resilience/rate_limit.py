"""
Per-source token bucket rate limiter.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Mapping

from revops_app.sync.metrics import record_rate_limit_wait

DEFAULT_RATE_PER_SECOND = 5.0


class TokenBucket:
    """
    Token bucket shared by every thread calling one external API.

    ``acquire`` reserves a token under the lock and sleeps outside it, so
    waiting callers queue up in arrival order without holding the lock.
    """

    def __init__(
        self,
        *,
        rate_per_second: float,
        burst: int | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = float(max(1, burst if burst is not None else int(self.rate_per_second) or 1))
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated_at = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
        self._updated_at = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def acquire(self) -> float:
        """Block until a token is available; return the seconds waited."""

        with self._lock:
            self._refill(self._clock())
            self._tokens -= 1.0
            deficit = -self._tokens
        wait_seconds = deficit / self.rate_per_second if deficit > 0 else 0.0
        if wait_seconds > 0:
            self._sleep(wait_seconds)
        record_rate_limit_wait(self.name, wait_seconds)
        return wait_seconds


class RateLimiterRegistry:
    """Hands out one bucket per source for the lifetime of the process."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep

    def get(
        self,
        source: str,
        *,
        limits: Mapping[str, tuple[float, int | None]] | None = None,
    ) -> TokenBucket:
        key = source.lower()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                rate, burst = (limits or {}).get(key, (DEFAULT_RATE_PER_SECOND, None))
                bucket = TokenBucket(
                    rate_per_second=rate,
                    burst=burst,
                    name=key,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._buckets[key] = bucket
            return bucket

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


_registry = RateLimiterRegistry()


def get_rate_limiter(
    source: str,
    limits: Mapping[str, tuple[float, int | None]] | None = None,
) -> TokenBucket:
    """Return the process-wide bucket for ``source``."""

    return _registry.get(source, limits=limits)


def reset_rate_limiters() -> None:
    _registry.reset()
