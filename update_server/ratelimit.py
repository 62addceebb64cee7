"""
Per-address rate limiting on top of pyrate-limiter.

Each route class (``updates``, ``login``, ``admin``, ``webhooks``) has its
own budget. A ``LimiterRegistry`` hands out one pyrate ``Limiter`` per
``"{route_class}:{address}"`` key, each backed by its own in-memory bucket,
and disposes of keys that have been idle for longer than their window.
The registry is a FastAPI dependency so tests and deployments can swap it.
"""

import logging
import math
import threading
import time

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, Optional

from fastapi import Depends, Request
from pyrate_limiter import BucketFullException, Limiter, Rate
from pyrate_limiter.buckets import InMemoryBucket

from update_server.errors import RateLimited
from update_server.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class _LimiterEntry:
    limiter: Limiter
    bucket: InMemoryBucket
    signature: tuple
    window_seconds: float
    last_seen: float


class LimiterRegistry:
    """Thread-safe cache of pyrate limiters keyed by route class and address."""

    def __init__(self, sweep_interval: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._entries: Dict[str, _LimiterEntry] = {}
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._next_sweep = 0.0

    def acquire(self, key: str, max_requests: int, window_seconds: float) -> bool:
        """Take one slot for ``key``. Returns False when the window is full."""
        limiter = self._limiter_for(key, max_requests, window_seconds)
        try:
            acquired = limiter.try_acquire(key)
        except BucketFullException as e:
            logger.debug("Rate limit bucket full for %s: %s", key, getattr(e, "meta_info", e))
            return False
        return bool(acquired)

    def _limiter_for(self, key: str, max_requests: int, window_seconds: float) -> Limiter:
        signature = (max_requests, int(window_seconds * 1000))
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)

            entry = self._entries.get(key)
            if entry is None or entry.signature != signature:
                if entry is not None:
                    self._dispose(entry)
                bucket = InMemoryBucket([Rate(max_requests, signature[1])])
                entry = _LimiterEntry(
                    limiter=Limiter(bucket, raise_when_fail=True, max_delay=None),
                    bucket=bucket,
                    signature=signature,
                    window_seconds=window_seconds,
                    last_seen=now,
                )
                self._entries[key] = entry

            entry.last_seen = now
            return entry.limiter

    def _maybe_sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        stale = [
            key for key, entry in self._entries.items()
            if entry.last_seen + entry.window_seconds <= now
        ]
        for key in stale:
            self._dispose(self._entries.pop(key))
        self._next_sweep = now + self._sweep_interval
        if stale:
            logger.debug("Evicted %d idle rate-limit keys", len(stale))

    @staticmethod
    def _dispose(entry: _LimiterEntry) -> None:
        # Stops the background leak task from holding on to the bucket
        dispose = getattr(entry.limiter, "dispose", None)
        if callable(dispose):
            dispose(entry.bucket)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimiter:
    def __init__(self, name: str, max_requests: int, window_seconds: float, registry: LimiterRegistry):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.registry = registry

    def check(self, address: str) -> None:
        key = f"{self.name}:{address}"
        if not self.registry.acquire(key, self.max_requests, self.window_seconds):
            retry_after = max(1, math.ceil(self.window_seconds))
            logger.warning(
                "Rate limit %s exceeded by %s, retry after %ss", self.name, address, retry_after
            )
            raise RateLimited(retry_after=retry_after)


@lru_cache
def get_limiter_registry() -> LimiterRegistry:
    return LimiterRegistry()


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def limiter_for(route_class: str):
    """FastAPI dependency returning the limiter configured for ``route_class``, if any."""

    def dependency(
        settings: Settings = Depends(get_settings),
        registry: LimiterRegistry = Depends(get_limiter_registry),
    ) -> Optional[RateLimiter]:
        spec = settings.rate_limits.get(route_class)
        if spec is None:
            return None
        return RateLimiter(route_class, spec.max_requests, spec.window_seconds, registry)

    return dependency


def rate_limit(route_class: str):
    """FastAPI dependency enforcing the budget configured for ``route_class``."""

    def dependency(
        request: Request,
        limiter: Optional[RateLimiter] = Depends(limiter_for(route_class)),
    ) -> None:
        if limiter is not None:
            limiter.check(client_address(request))

    return dependency
