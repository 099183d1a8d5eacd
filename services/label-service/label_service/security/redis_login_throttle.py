"""Redis-backed sliding window throttle for failed logins."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError


class RedisLoginThrottle:
    """Failure counter shared across workers, kept in Redis sorted sets."""

    _RECORD_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local counter_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local now_ms = tonumber(ARGV[2])

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    local seq = redis.call('INCR', counter_key)
    redis.call('PEXPIRE', counter_key, window_ms)
    redis.call('ZADD', key, now_ms, tostring(now_ms) .. ':' .. tostring(seq))
    redis.call('PEXPIRE', key, window_ms)
    return redis.call('ZCARD', key)
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_failures: int,
        window_seconds: int,
        key_prefix: str = "login-failures",
    ) -> None:
        self._client = client
        self._max_failures = max_failures
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._RECORD_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def is_blocked(self, key: str) -> bool:
        now_ms = int(time.time() * 1000)
        redis_key = self._key(key)
        self._client.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        return int(self._client.zcard(redis_key)) >= self._max_failures

    def record_failure(self, key: str) -> int:
        now_ms = int(time.time() * 1000)
        redis_key = self._key(key)
        try:
            return int(self._script(keys=[redis_key], args=[self._window_ms, now_ms]))
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command `evalsha`" in message or "unknown command `eval`" in message:
                return self._record_fallback(redis_key, now_ms)
            raise

    def reset(self, key: str) -> None:
        redis_key = self._key(key)
        self._client.delete(redis_key, f"{redis_key}:seq")

    def _record_fallback(self, redis_key: str, now_ms: int) -> int:
        """Pipeline used when the server refuses Lua scripting."""
        seq = self._client.incr(f"{redis_key}:seq")
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        pipe.pexpire(f"{redis_key}:seq", self._window_ms)
        pipe.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        pipe.pexpire(redis_key, self._window_ms)
        pipe.zcard(redis_key)
        return int(pipe.execute()[-1])
