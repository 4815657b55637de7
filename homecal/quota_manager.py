"""
Per-source token bucket guarding outbound calendar writes.

Callers check ``can_write`` early and call ``consume_token`` right before the
network call. A race between the two is tolerated; the quota is a soft limit.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 30
DEFAULT_REFILL_RATE = 0.5      # tokens per second (30/minute)
DEFAULT_MAX_IDLE = 24 * 3600   # evict buckets untouched for a day
CLEANUP_INTERVAL = 3600


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float
    last_access: float


class QuotaManager:
    """Token buckets keyed by source id, created lazily."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_RATE,
        max_idle: float = DEFAULT_MAX_IDLE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.max_idle = max_idle
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def _bucket(self, source_id: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(source_id)
        if bucket is None:
            bucket = TokenBucket(tokens=float(self.capacity), last_refill=now, last_access=now)
            self._buckets[source_id] = bucket
        return bucket

    def _refill(self, bucket: TokenBucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.last_refill)
        if elapsed:
            bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
            bucket.last_refill = now
        bucket.last_access = now

    def can_write(self, source_id: str) -> bool:
        """Whether at least one token is available. Does not consume."""
        with self._lock:
            now = self._clock()
            bucket = self._bucket(source_id, now)
            self._refill(bucket, now)
            return bucket.tokens >= 1

    def consume_token(self, source_id: str) -> bool:
        """Take one token if available; returns whether it was taken."""
        with self._lock:
            now = self._clock()
            bucket = self._bucket(source_id, now)
            self._refill(bucket, now)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True
            logger.warning("Write quota exhausted for source %s", source_id)
            return False

    def remaining_tokens(self, source_id: str) -> float:
        with self._lock:
            now = self._clock()
            bucket = self._bucket(source_id, now)
            self._refill(bucket, now)
            return bucket.tokens

    def cleanup(self) -> int:
        """Evict buckets untouched for max_idle seconds. Returns number evicted."""
        with self._lock:
            now = self._clock()
            stale = [
                source_id for source_id, bucket in self._buckets.items()
                if now - bucket.last_access >= self.max_idle
            ]
            for source_id in stale:
                del self._buckets[source_id]
            self._last_cleanup = now
        if stale:
            logger.debug("Evicted %d idle quota buckets", len(stale))
        return len(stale)

    def maybe_cleanup(self) -> int:
        """Run cleanup at most once per hour."""
        if self._clock() - self._last_cleanup < CLEANUP_INTERVAL:
            return 0
        return self.cleanup()

    def __len__(self) -> int:
        return len(self._buckets)
