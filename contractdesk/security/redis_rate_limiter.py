"""Redis-backed sliding window rate limiter."""

from __future__ import annotations

import logging
import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)


class RedisSlidingWindowRateLimiter:
    """Distributed sliding window limiter built on Redis sorted sets.

    Every attempt is recorded and, when it pushes the window over the limit,
    withdrawn again inside the same script, so rejected attempts never count
    against the caller and no other client observes the intermediate count.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local seq_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    local seq = redis.call('INCR', seq_key)
    redis.call('PEXPIRE', seq_key, window_ms)
    local attempt = tostring(now_ms) .. ':' .. tostring(seq)
    redis.call('ZADD', key, now_ms, attempt)
    if redis.call('ZCARD', key) > max_requests then
        redis.call('ZREM', key, attempt)
        return 0
    end
    redis.call('PEXPIRE', key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "contractdesk:rate",
    ) -> None:
        """Store the Redis client and window configuration, and register the Lua script."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def allow(self, key: str) -> bool:
        """Return ``True`` when the key is still within the distributed rate limit."""
        now_ms = int(time.time() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        try:
            result = self._script(keys=[redis_key], args=[self._window_ms, self._max_requests, now_ms])
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command `evalsha`" in message or "unknown command `eval`" in message:
                return self._allow_fallback(redis_key, now_ms)
            raise
        return int(result) == 1

    def _allow_fallback(self, redis_key: str, now_ms: int) -> bool:
        """Check-then-record without Lua, for servers that do not offer scripting."""
        logger.debug("redis scripting unavailable, using fallback for %s", redis_key)
        self._client.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        if self._client.zcard(redis_key) >= self._max_requests:
            return False
        seq = self._client.incr(f"{redis_key}:seq")
        self._client.pexpire(f"{redis_key}:seq", self._window_ms)
        self._client.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        self._client.pexpire(redis_key, self._window_ms)
        return True
