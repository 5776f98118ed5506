"""
Pluggable storage for rate limit counters.

The backend is chosen once at construction (``build_rate_limit_backend``):
``InMemoryRateLimitBackend`` for a single process, ``RedisRateLimitBackend``
when several workers share limits. Both check the fixed window and the burst
window together and only count a request that both allow.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog
from cachetools import TLRUCache
from redis.asyncio import Redis

from dotmac.recurring.rate_limit.models import ConsumeResult, WindowState
from dotmac.recurring.settings import RateLimitBackendKind, Settings, settings

logger = structlog.get_logger(__name__)


class RateLimitBackend(Protocol):
    async def consume(
        self,
        window_key: str,
        window_limit: int,
        window_seconds: int,
        burst_key: str,
        burst_limit: int,
        burst_seconds: int,
    ) -> ConsumeResult: ...  # pragma: no cover - protocol

    async def peek(self, window_key: str, burst_key: str) -> WindowState: ...  # pragma: no cover

    async def delete(self, *keys: str) -> None: ...  # pragma: no cover - protocol


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimitBackend:
    """Process-local counters in a cachetools ``TLRUCache``.

    Each entry expires at its own window reset time; when the cache is full the
    least recently used identifier is evicted.
    """

    def __init__(self, maxsize: int = 100_000, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._cache: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, value, _now: value.reset_at,
            timer=self._clock,
        )
        # cachetools caches are not thread-safe
        self._lock = threading.Lock()

    def _current(self, key: str, seconds: int, now: float) -> _Window:
        window = self._cache.get(key)
        if window is None or window.reset_at <= now:
            window = _Window(count=0, reset_at=now + seconds)
        return window

    async def consume(
        self,
        window_key: str,
        window_limit: int,
        window_seconds: int,
        burst_key: str,
        burst_limit: int,
        burst_seconds: int,
    ) -> ConsumeResult:
        with self._lock:
            now = self._clock()
            window = self._current(window_key, window_seconds, now)
            burst = self._current(burst_key, burst_seconds, now)
            allowed = window.count < window_limit and burst.count < burst_limit
            if allowed:
                window.count += 1
                burst.count += 1
                self._cache[window_key] = window
                self._cache[burst_key] = burst
            return ConsumeResult(
                allowed=allowed,
                state=WindowState(window.count, window.reset_at, burst.count, burst.reset_at),
            )

    async def peek(self, window_key: str, burst_key: str) -> WindowState:
        with self._lock:
            now = self._clock()
            window = self._cache.get(window_key)
            burst = self._cache.get(burst_key)
            return WindowState(
                window_count=window.count if window and window.reset_at > now else 0,
                window_reset_at=window.reset_at if window else now,
                burst_count=burst.count if burst and burst.reset_at > now else 0,
                burst_reset_at=burst.reset_at if burst else now,
            )

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._cache.pop(key, None)

    def __len__(self) -> int:
        return len(self._cache)


# Checks both windows and increments only when both have room.
# Returns {allowed, window_count, window_pttl, burst_count, burst_pttl}.
CONSUME_SCRIPT = """
local window = tonumber(redis.call('GET', KEYS[1]) or '0')
local burst = tonumber(redis.call('GET', KEYS[2]) or '0')
if window >= tonumber(ARGV[1]) or burst >= tonumber(ARGV[3]) then
    return {0, window, redis.call('PTTL', KEYS[1]), burst, redis.call('PTTL', KEYS[2])}
end
window = redis.call('INCR', KEYS[1])
if window == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
burst = redis.call('INCR', KEYS[2])
if burst == 1 then
    redis.call('PEXPIRE', KEYS[2], ARGV[4])
end
return {1, window, redis.call('PTTL', KEYS[1]), burst, redis.call('PTTL', KEYS[2])}
"""


class RedisRateLimitBackend:
    """Counters shared through Redis; the consume step is one atomic Lua call."""

    def __init__(self, client: Redis, clock: Callable[[], float] | None = None) -> None:
        self._client = client
        self._clock = clock or time.time
        self._consume = client.register_script(CONSUME_SCRIPT)

    def _reset_at(self, pttl: int, now: float) -> float:
        # PTTL is -2 for a missing key and -1 for a key without expiry
        return now + max(int(pttl), 0) / 1000

    async def consume(
        self,
        window_key: str,
        window_limit: int,
        window_seconds: int,
        burst_key: str,
        burst_limit: int,
        burst_seconds: int,
    ) -> ConsumeResult:
        allowed, window_count, window_pttl, burst_count, burst_pttl = await self._consume(
            keys=[window_key, burst_key],
            args=[window_limit, window_seconds * 1000, burst_limit, burst_seconds * 1000],
        )
        now = self._clock()
        return ConsumeResult(
            allowed=bool(int(allowed)),
            state=WindowState(
                window_count=int(window_count),
                window_reset_at=self._reset_at(window_pttl, now),
                burst_count=int(burst_count),
                burst_reset_at=self._reset_at(burst_pttl, now),
            ),
        )

    async def peek(self, window_key: str, burst_key: str) -> WindowState:
        window_count, burst_count = await self._client.mget(window_key, burst_key)
        window_pttl = await self._client.pttl(window_key)
        burst_pttl = await self._client.pttl(burst_key)
        now = self._clock()
        return WindowState(
            window_count=int(window_count or 0),
            window_reset_at=self._reset_at(window_pttl, now),
            burst_count=int(burst_count or 0),
            burst_reset_at=self._reset_at(burst_pttl, now),
        )

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*keys)


def build_rate_limit_backend(
    config: Settings.RateLimitSettings | None = None,
    redis_client: Redis | None = None,
    redis_config: Settings.RedisSettings | None = None,
) -> RateLimitBackend:
    """Select the backend named in configuration.

    The Redis backend uses ``redis_client`` when given, otherwise a client built
    from ``redis_config``.
    """
    config = config or settings.rate_limit
    match config.backend:
        case RateLimitBackendKind.MEMORY:
            return InMemoryRateLimitBackend(maxsize=config.max_tracked_keys)
        case RateLimitBackendKind.REDIS:
            if redis_client is None:
                redis_config = redis_config or settings.redis
                redis_client = Redis.from_url(redis_config.redis_url, decode_responses=True)
            return RedisRateLimitBackend(redis_client)


__all__ = [
    "CONSUME_SCRIPT",
    "InMemoryRateLimitBackend",
    "RateLimitBackend",
    "RedisRateLimitBackend",
    "build_rate_limit_backend",
]
