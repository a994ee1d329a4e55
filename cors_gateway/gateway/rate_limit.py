"""
Token bucket rate limiting keyed by client.

Each key gets its own bucket holding up to ``burst_size`` tokens, refilled at
``requests_per_second``. A request consumes one token; an empty bucket means
the request is rejected. Buckets idle for longer than ``bucket_ttl`` are swept
periodically so one-off clients do not accumulate in memory.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from cors_gateway.gateway.context import RequestContext


@dataclass
class TokenBucket:
    max_tokens: float
    tokens_per_second: float
    tokens: float = field(default=-1.0)
    last_update: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        if self.tokens < 0:
            self.tokens = self.max_tokens

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_update)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.tokens_per_second)
        self.last_update = now

    def consume(self, now: float, tokens: float = 1.0) -> bool:
        self._refill(now)
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def time_until_available(self, now: float, tokens: float = 1.0) -> float:
        self._refill(now)
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.tokens_per_second


def client_address_key(context: RequestContext) -> str:
    return context.client_address or "unknown"


class TokenBucketRateLimiter:
    """
    Thread-safe rate limiter usable as the admission pipeline's limiter.

    Calling the limiter with a RequestContext returns True when the request
    may proceed and False when it must be rejected.
    """

    def __init__(
        self,
        requests_per_second: float = 10.0,
        burst_size: int = 20,
        key_func: Optional[Callable[[RequestContext], str]] = None,
        cleanup_interval: float = 60.0,
        bucket_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.burst_size = burst_size
        self.key_func = key_func or client_address_key
        self.cleanup_interval = cleanup_interval
        self.bucket_ttl = bucket_ttl
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def __call__(self, context: RequestContext) -> bool:
        key = self.key_func(context)
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup > self.cleanup_interval:
                self._sweep(now)
            return self._bucket(key, now).consume(now)

    def retry_after(self, context: RequestContext) -> int:
        """Whole seconds until the client's next request would be allowed."""
        key = self.key_func(context)
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0
            wait = bucket.time_until_available(now)
        return int(wait) + 1 if wait > 0 else 0

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _bucket(self, key: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                max_tokens=self.burst_size,
                tokens_per_second=self.requests_per_second,
                last_update=now,
            )
            self._buckets[key] = bucket
        return bucket

    def _sweep(self, now: float) -> None:
        expired = [
            key
            for key, bucket in self._buckets.items()
            if now - bucket.last_update > self.bucket_ttl
        ]
        for key in expired:
            del self._buckets[key]
        self._last_cleanup = now
