"""In-memory sliding window throttle for failed login attempts."""

from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock
from typing import Deque, DefaultDict, Protocol

logger = logging.getLogger(__name__)


class LoginThrottle(Protocol):
    def is_blocked(self, key: str) -> bool: ...

    def record_failure(self, key: str) -> int: ...

    def reset(self, key: str) -> None: ...


class SlidingWindowLoginThrottle:
    """Thread-safe counter of recent failures per key (normally the login email)."""

    def __init__(self, max_failures: int, window_seconds: int) -> None:
        self._max_failures = max_failures
        self._window = window_seconds
        self._failures: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def _prune(self, queue: Deque[float], now: float) -> None:
        while queue and now - queue[0] > self._window:
            queue.popleft()

    def is_blocked(self, key: str) -> bool:
        """Return ``True`` once ``key`` has used up its failures for the window."""
        now = time.time()
        with self._lock:
            queue = self._failures[key]
            self._prune(queue, now)
            return len(queue) >= self._max_failures

    def record_failure(self, key: str) -> int:
        """Record a failed attempt and return the failure count inside the window."""
        now = time.time()
        with self._lock:
            queue = self._failures[key]
            self._prune(queue, now)
            queue.append(now)
            return len(queue)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


def build_login_throttle(settings) -> LoginThrottle:
    """Instantiate the configured throttle backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            from .redis_login_throttle import RedisLoginThrottle

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("login throttle configured for redis backend at %s", settings.redis_url)
            return RedisLoginThrottle(
                client,
                max_failures=settings.login_max_failures,
                window_seconds=settings.login_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis login throttle unavailable, falling back to in-memory: %s", exc)

    logger.info("login throttle using in-memory backend")
    return SlidingWindowLoginThrottle(
        max_failures=settings.login_max_failures,
        window_seconds=settings.login_window_seconds,
    )
