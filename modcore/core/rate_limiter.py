"""Token-bucket rate limiting keyed by client address or user."""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from fastapi import Request, Response

from modcore.core.exceptions import too_many_requests

logger = logging.getLogger("modcore.ratelimit")


class _Bucket:
    __slots__ = ("tokens", "last_refill", "lock")

    def __init__(self, tokens: int, last_refill: float):
        self.tokens = tokens
        self.last_refill = last_refill
        self.lock = threading.Lock()


class RateLimiter:
    """Fixed-window token buckets.

    Each key gets ``max_requests`` tokens; the bucket refills to full once
    ``window`` seconds have passed since its last refill. A sweep thread drops
    buckets idle for more than two windows.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window: float = 60.0,
        sweep_interval: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        if sweep_interval > 0:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(sweep_interval,),
                name="modcore-ratelimit-sweep",
                daemon=True,
            )
            self._sweeper.start()

    def _bucket(self, key: str, create: bool = True) -> Optional[_Bucket]:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None and create:
                bucket = _Bucket(self.max_requests, self._clock())
                self._buckets[key] = bucket
            return bucket

    def _refill(self, bucket: _Bucket) -> None:
        # caller holds bucket.lock
        now = self._clock()
        if now - bucket.last_refill >= self.window:
            bucket.tokens = self.max_requests
            bucket.last_refill = now

    def allow(self, key: str) -> bool:
        """Take one token for ``key``. False when the bucket is empty."""
        bucket = self._bucket(key)
        with bucket.lock:
            self._refill(bucket)
            if bucket.tokens > 0:
                bucket.tokens -= 1
                return True
        logger.debug("Rate limit exceeded for %s", key)
        return False

    def remaining(self, key: str) -> int:
        bucket = self._bucket(key, create=False)
        if bucket is None:
            return self.max_requests
        with bucket.lock:
            self._refill(bucket)
            return bucket.tokens

    def reset_after(self, key: str) -> float:
        """Seconds until ``key``'s bucket refills."""
        bucket = self._bucket(key, create=False)
        if bucket is None:
            return self.window
        with bucket.lock:
            return max(0.0, bucket.last_refill + self.window - self._clock())

    def sweep(self) -> int:
        """Drop buckets idle for more than two windows. Returns the number removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._buckets):
                bucket = self._buckets[key]
                with bucket.lock:
                    if now - bucket.last_refill > self.window * 2:
                        del self._buckets[key]
                        removed += 1
        if removed:
            logger.debug("Swept %d idle rate-limit buckets", removed)
        return removed

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Rate limiter sweep failed")

    def close(self) -> None:
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=5)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimit:
    """Dependency that enforces the app's rate limiter for a route.

    Uses ``request.app.state.rate_limiter``. The key defaults to the client
    address; pass ``scope="endpoint"`` to limit per address and path.
    """

    def __init__(self, scope: str = "ip", key_func: Optional[Callable[[Request], str]] = None):
        self.scope = scope
        self.key_func = key_func or client_ip

    def __call__(self, request: Request, response: Response) -> None:
        limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            return

        key = self.key_func(request)
        if self.scope == "endpoint":
            key = f"{key}:{request.url.path}"

        reset = int(limiter.reset_after(key))
        headers = {
            "X-RateLimit-Limit": str(limiter.max_requests),
            "X-RateLimit-Reset": str(reset),
        }
        if not limiter.allow(key):
            headers["X-RateLimit-Remaining"] = "0"
            headers["Retry-After"] = str(max(1, int(limiter.reset_after(key))))
            raise too_many_requests(headers=headers)

        headers["X-RateLimit-Remaining"] = str(limiter.remaining(key))
        response.headers.update(headers)
