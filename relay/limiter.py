"""Per-client token-bucket rate limiting.

`RateLimiterRegistry` keeps one `TokenBucket` per client identity. Lookups of
known identities only take the shared side of a readers-preferred lock; the
exclusive side is taken solely to create (or evict) buckets.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional


class _SharedLock:
    """Readers-preferred shared/exclusive lock.

    Readers only wait for an active writer, never for waiting writers.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class TokenBucket:
    """Continuously refilling token bucket.

    `rate` is tokens per second; the bucket starts full at `capacity`.
    """

    def __init__(self, rate: float, capacity: float, now: float) -> None:
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self.updated_at = now
        self.last_seen = now
        self._lock = threading.Lock()

    def consume(self, now: float, amount: float = 1.0) -> bool:
        with self._lock:
            elapsed = now - self.updated_at
            if elapsed > 0:
                self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
                self.updated_at = now
            self.last_seen = max(self.last_seen, now)
            if self.tokens >= amount:
                self.tokens -= amount
                return True
            return False

    def is_full(self, now: float) -> bool:
        """Return True when the bucket would hold `capacity` tokens at `now`."""
        with self._lock:
            elapsed = max(0.0, now - self.updated_at)
            return self.tokens + elapsed * self.rate >= self.capacity


class RateLimiterRegistry:
    """Owns the token bucket of every client identity seen so far.

    Buckets refill at `tokens` per `interval` seconds up to `burst`. Buckets
    are never dropped unless `idle_ttl` is set, in which case `evict_idle`
    removes those unused for longer than `idle_ttl` seconds that have also
    refilled to `burst`. A recreated bucket therefore never grants more than
    the evicted one would have.
    """

    def __init__(
        self,
        tokens: int = 10,
        interval: float = 60.0,
        burst: int = 10,
        *,
        idle_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tokens <= 0 or interval <= 0:
            raise ValueError("tokens and interval must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = tokens / interval
        self.burst = burst
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = _SharedLock()

    def _bucket_for(self, identity: str, now: float) -> TokenBucket:
        with self._lock.shared():
            bucket = self._buckets.get(identity)
        if bucket is not None:
            return bucket
        with self._lock.exclusive():
            # another caller may have created it while we waited
            bucket = self._buckets.get(identity)
            if bucket is None:
                bucket = TokenBucket(self.rate, float(self.burst), now)
                self._buckets[identity] = bucket
            return bucket

    def allow(self, identity: str) -> bool:
        """Consume one token for `identity`; return False when none is available."""
        now = self._clock()
        return self._bucket_for(identity, now).consume(now)

    def evict_idle(self, now: Optional[float] = None) -> int:
        """Drop idle, fully refilled buckets; return how many were dropped."""
        if self.idle_ttl is None:
            return 0
        if now is None:
            now = self._clock()
        cutoff = now - self.idle_ttl
        with self._lock.exclusive():
            stale = [
                k for k, b in self._buckets.items() if b.last_seen < cutoff and b.is_full(now)
            ]
            for k in stale:
                del self._buckets[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock.exclusive():
            self._buckets.clear()

    def __contains__(self, identity: str) -> bool:
        with self._lock.shared():
            return identity in self._buckets

    def __len__(self) -> int:
        with self._lock.shared():
            return len(self._buckets)
