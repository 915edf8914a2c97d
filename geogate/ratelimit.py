"""Per-key token buckets with lazy, access-driven refill."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from numbers import Real
from typing import Callable

from geogate.errors import ConfigError


@dataclass(frozen=True)
class Decision:
    """Outcome of a single admission check.

    Allowed decisions carry ``tokens_remaining``; denied ones carry
    ``retry_after_seconds``, the whole seconds until one token is available.
    """

    allowed: bool
    tokens_remaining: float | None = None
    retry_after_seconds: int | None = None


class _Bucket:
    __slots__ = ("tokens", "last_refill", "lock")

    def __init__(self, tokens: float, last_refill: float) -> None:
        self.tokens = tokens
        self.last_refill = last_refill
        self.lock = threading.Lock()


def _positive_number(name: str, value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value) or value <= 0:
        raise ConfigError(f"{name} must be a finite positive number, got {value!r}")
    return float(value)


class TokenBucketStore:
    """One token bucket per key, refilled on access rather than on a timer.

    The store-wide lock only guards bucket creation; the refill/consume step
    runs under the bucket's own lock so different keys never contend.
    Buckets live for the lifetime of the store.
    """

    def __init__(
        self,
        refill_rate_per_second: float,
        capacity: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate = _positive_number("refill_rate_per_second", refill_rate_per_second)
        self._capacity = _positive_number("capacity", capacity)
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}

    @property
    def refill_rate_per_second(self) -> float:
        return self._rate

    @property
    def capacity(self) -> float:
        return self._capacity

    def __len__(self) -> int:
        return len(self._buckets)

    def _bucket_for(self, key: str, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(self._capacity, now)
                self._buckets[key] = bucket
            return bucket

    def admit(self, key: str) -> Decision:
        """Refill the bucket for ``key`` and try to take one token from it."""
        now = self._clock()
        bucket = self._bucket_for(key, now)
        with bucket.lock:
            # The clock may have been read before another caller advanced
            # last_refill, hence the clamp.
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(self._capacity, bucket.tokens + elapsed * self._rate)
            bucket.last_refill = max(bucket.last_refill, now)

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return Decision(allowed=True, tokens_remaining=bucket.tokens)

            wait = math.ceil((1 - bucket.tokens) / self._rate)
            return Decision(allowed=False, retry_after_seconds=max(1, wait))
