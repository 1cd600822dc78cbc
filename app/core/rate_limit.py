"""
In-memory sliding window rate limiter for the webhook endpoint.
Protects the signature verifier and the event store against flooding.

This is advisory containment, not a security boundary: state is
process-local and lost on restart.
"""
import math
import threading
import time
from collections import deque
from typing import Deque, Dict, Optional

from fastapi import Request


class _Bucket:
    """Attempt timestamps for one identity, guarded by its own lock."""

    __slots__ = ("lock", "timestamps", "evicted")

    def __init__(self):
        self.lock = threading.Lock()
        self.timestamps: Deque[float] = deque()
        self.evicted = False

    def prune(self, cutoff: float) -> None:
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class RateLimiter:
    """
    Sliding window limiter: at most ``max_requests`` attempts per identity
    within the trailing ``window_seconds``.

    Locking is per identity so unrelated sources never wait on each other.
    The registry lock is only held while looking up, creating or evicting
    buckets.
    """

    def __init__(self, max_requests: int = 100, window_seconds: float = 900):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._buckets: Dict[str, _Bucket] = {}
        self._registry_lock = threading.Lock()

    def _bucket(self, identity: str) -> _Bucket:
        with self._registry_lock:
            bucket = self._buckets.get(identity)
            if bucket is None:
                bucket = self._buckets[identity] = _Bucket()
            return bucket

    def allow(self, identity: str, now: Optional[float] = None) -> bool:
        """
        Record an attempt and return True if the identity is under capacity.
        Denied attempts are not recorded.
        """
        if now is None:
            now = time.time()

        while True:
            bucket = self._bucket(identity)
            with bucket.lock:
                if bucket.evicted:
                    # Lost a race with sweep(); pick up the replacement bucket
                    continue
                bucket.prune(now - self.window_seconds)
                if len(bucket.timestamps) >= self.max_requests:
                    return False
                bucket.timestamps.append(now)
                return True

    def retry_after(self, identity: str, now: Optional[float] = None) -> int:
        """
        Seconds until the identity can make another attempt (0 if it can now).
        """
        if now is None:
            now = time.time()

        with self._registry_lock:
            bucket = self._buckets.get(identity)
        if bucket is None:
            return 0

        with bucket.lock:
            bucket.prune(now - self.window_seconds)
            if len(bucket.timestamps) < self.max_requests:
                return 0
            remaining = bucket.timestamps[0] + self.window_seconds - now
        return max(1, math.ceil(remaining))

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Evict identities whose window has fully expired.
        Returns the number of identities removed.
        """
        if now is None:
            now = time.time()
        cutoff = now - self.window_seconds

        evicted = 0
        with self._registry_lock:
            for identity, bucket in list(self._buckets.items()):
                with bucket.lock:
                    bucket.prune(cutoff)
                    if bucket.timestamps:
                        continue
                    bucket.evicted = True
                del self._buckets[identity]
                evicted += 1
        return evicted

    def clear(self) -> None:
        """Drop all tracked identities."""
        with self._registry_lock:
            for bucket in self._buckets.values():
                with bucket.lock:
                    bucket.evicted = True
            self._buckets.clear()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._buckets)


def get_client_ip(request: Request) -> str:
    """
    Extract the client address used as the rate limiting identity.

    X-Forwarded-For is resolved by uvicorn's ProxyHeadersMiddleware, and only
    for trusted proxies, so a client cannot spoof its identity by sending
    the header directly.
    """
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
