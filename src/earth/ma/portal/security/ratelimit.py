"""
In-process token-bucket rate limiting.

Each key (for example ``"tx:" + did``) owns a bucket that starts full and refills in
proportion to elapsed time. Buckets that have been idle for longer than two windows are
purged by a periodic sweep owned by the limiter.
"""

import asyncio
import contextlib
from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 60


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Bucket:
    tokens: float
    last_refill: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate-limit check.

    Attributes:
        allowed: Whether the request may proceed
        retry_after: Seconds the caller should wait, set only when denied
    """

    allowed: bool
    retry_after: Optional[int] = None


class RateLimiter:
    """Token-bucket limiter keyed by arbitrary strings."""

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._buckets: Dict[str, Bucket] = {}
        self._lock = threading.Lock()
        self._clock = clock or _now_ms
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """
        Consume one token from the bucket for ``key``.

        A new key starts with ``max_requests`` tokens. On every call the bucket is
        refilled by ``floor(elapsed / window_ms * max_requests)`` tokens, capped at
        ``max_requests``; the refill time only moves forward when at least one token was
        added, so slow trickles of requests still accumulate credit.

        Args:
            key: Bucket identifier
            max_requests: Bucket capacity and refill amount per window
            window_ms: Window length in milliseconds

        Returns:
            RateLimitResult: ``allowed`` with no ``retry_after``, or a denial carrying
            ``ceil(window_ms / 1000)`` seconds
        """
        self.start()
        now = self._clock()

        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = Bucket(tokens=max_requests, last_refill=now, window_ms=window_ms)
                self._buckets[key] = bucket

            elapsed = now - bucket.last_refill
            refill = math.floor(elapsed / window_ms * max_requests)
            if refill > 0:
                bucket.tokens = min(max_requests, bucket.tokens + refill)
                bucket.last_refill = now

            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return RateLimitResult(allowed=True)

        return RateLimitResult(allowed=False, retry_after=math.ceil(window_ms / 1000))

    def sweep(self, now: Optional[int] = None) -> int:
        """Delete buckets idle for more than two of their windows. Returns the count."""
        if now is None:
            now = self._clock()
        with self._lock:
            stale = [
                key
                for key, bucket in self._buckets.items()
                if now - bucket.last_refill > bucket.window_ms * 2
            ]
            for key in stale:
                del self._buckets[key]
        return len(stale)

    def start(self) -> None:
        """Start the periodic sweep if an event loop is running. Safe to call repeatedly."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            purged = self.sweep()
            if purged:
                logger.debug("Purged %d idle rate-limit buckets", purged)
