"""Redis-backed sliding window throttle shared by every service replica."""

from __future__ import annotations

import time
import uuid

from redis import Redis


class RedisSlidingWindowThrottle:
    """Sliding window built on a sorted set of hit timestamps per key."""

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: float,
        key_prefix: str = "account-throttle",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = int(window_seconds * 1000)
        self._key_prefix = key_prefix

    def allow(self, key: str) -> bool:
        """Optimistically record the hit, then withdraw it if the window overflowed."""
        redis_key = f"{self._key_prefix}:{key}"
        now_ms = int(time.time() * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"

        pipe = self._client.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        pipe.zadd(redis_key, {member: now_ms})
        pipe.zcard(redis_key)
        pipe.pexpire(redis_key, self._window_ms)
        _, _, count, _ = pipe.execute()

        if int(count) > self._max_requests:
            self._client.zrem(redis_key, member)
            return False
        return True
