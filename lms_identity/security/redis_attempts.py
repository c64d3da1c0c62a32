"""Redis-backed sliding window attempt counter."""

from __future__ import annotations

import time
import uuid

from redis import Redis


class RedisAttemptLimiter:
    """Distributed attempt counter implemented with Redis sorted sets.

    Each attempt is a member scored by its millisecond timestamp; members
    older than the window are trimmed before counting.
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_attempts: int,
        window_seconds: int,
        key_prefix: str = "attempts",
    ) -> None:
        self._client = client
        self._max_attempts = max_attempts
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def exceeded(self, key: str) -> bool:
        """Return ``True`` once ``key`` has used up its attempts in the window."""
        now_ms = int(time.time() * 1000)
        redis_key = self._key(key)
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        pipe.zcard(redis_key)
        _, current = pipe.execute()
        return int(current) >= self._max_attempts

    def record(self, key: str) -> None:
        now_ms = int(time.time() * 1000)
        redis_key = self._key(key)
        pipe = self._client.pipeline()
        pipe.zadd(redis_key, {f"{now_ms}:{uuid.uuid4().hex}": now_ms})
        pipe.pexpire(redis_key, self._window_ms)
        pipe.execute()

    def reset(self, key: str) -> None:
        self._client.delete(self._key(key))
