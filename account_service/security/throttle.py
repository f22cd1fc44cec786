"""Sliding window throttle guarding account write endpoints."""

from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, DefaultDict, Protocol

from ..config import Settings

logger = logging.getLogger(__name__)


class WriteThrottle(Protocol):
    def allow(self, key: str) -> bool: ...


class SlidingWindowThrottle:
    """Thread-safe per-key sliding window kept in process memory."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._hits: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Record a hit for ``key`` and return ``False`` once the window is full."""
        now = self._clock()
        cutoff = now - self._window
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self._max_requests:
                return False
            hits.append(now)
            return True


def build_throttle(settings: Settings) -> WriteThrottle:
    """Instantiate the configured throttle backend, falling back to memory when Redis is down."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            from .redis_throttle import RedisSlidingWindowThrottle

            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("write throttle using redis backend at %s", settings.redis_url)
            return RedisSlidingWindowThrottle(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis throttle unavailable, falling back to in-memory: %s", exc)

    logger.info("write throttle using in-memory backend")
    return SlidingWindowThrottle(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
