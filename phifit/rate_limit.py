"""
Login attempt limiting.

A fixed window of `max_attempts` per key; the attempt after that locks the key
out for `lockout_seconds`. A successful login resets the key. The limiter is
constructed at startup and stored on `app.state`; pick the Redis backend when
running more than one API process.
"""
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Callable, Protocol
import structlog
from redis.asyncio import Redis

from phifit.config import Settings

log = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    locked_until: float | None = None

    def retry_after_seconds(self, now: float | None = None) -> int:
        until = self.locked_until or self.reset_at
        return max(0, int(until - (now if now is not None else time.time())) + 1)


class RateLimiter(Protocol):
    async def hit(self, key: str) -> RateLimitResult: ...
    async def reset(self, key: str) -> None: ...
    async def close(self) -> None: ...


@dataclass
class _Entry:
    count: int
    reset_at: float
    locked_until: float | None = None


class InMemoryRateLimiter:
    """Single-process limiter. State is lost on restart."""

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._store: dict[str, _Entry] = {}

    def _purge(self, now: float) -> None:
        for key in [k for k, e in self._store.items() if e.reset_at < now and (e.locked_until is None or e.locked_until < now)]:
            del self._store[key]

    async def hit(self, key: str) -> RateLimitResult:
        now = self._clock()
        self._purge(now)
        entry = self._store.get(key)

        if entry and entry.locked_until is not None and entry.locked_until > now:
            return RateLimitResult(False, 0, entry.locked_until, entry.locked_until)

        if entry is None:
            entry = _Entry(count=1, reset_at=now + self.window_seconds)
            self._store[key] = entry
            return RateLimitResult(True, self.max_attempts - 1, entry.reset_at)

        entry.count += 1
        if entry.count > self.max_attempts:
            entry.locked_until = now + self.lockout_seconds
            log.warning("rate_limit_lockout", key=key, locked_seconds=self.lockout_seconds)
            return RateLimitResult(False, 0, entry.locked_until, entry.locked_until)
        return RateLimitResult(True, self.max_attempts - entry.count, entry.reset_at)

    async def reset(self, key: str) -> None:
        self._store.pop(key, None)

    async def close(self) -> None:
        self._store.clear()


class RedisRateLimiter:
    """Shared limiter: INCR + EXPIRE counter per key, plus a lock key with a TTL."""

    def __init__(
        self,
        redis: Redis,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 3600,
        prefix: str = "ratelimit",
    ) -> None:
        self.redis = redis
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.prefix = prefix

    def _keys(self, key: str) -> tuple[str, str]:
        return f"{self.prefix}:{key}:count", f"{self.prefix}:{key}:lock"

    async def hit(self, key: str) -> RateLimitResult:
        now = time.time()
        count_key, lock_key = self._keys(key)

        lock_ttl = await self.redis.ttl(lock_key)
        if lock_ttl and lock_ttl > 0:
            until = now + lock_ttl
            return RateLimitResult(False, 0, until, until)

        pipe = self.redis.pipeline()
        pipe.incr(count_key)
        pipe.expire(count_key, self.window_seconds, nx=True)
        pipe.ttl(count_key)
        count, _, ttl = await pipe.execute()
        reset_at = now + (ttl if ttl and ttl > 0 else self.window_seconds)

        if int(count) > self.max_attempts:
            await self.redis.set(lock_key, "1", ex=self.lockout_seconds)
            await self.redis.delete(count_key)
            until = now + self.lockout_seconds
            log.warning("rate_limit_lockout", key=key, locked_seconds=self.lockout_seconds)
            return RateLimitResult(False, 0, until, until)
        return RateLimitResult(True, self.max_attempts - int(count), reset_at)

    async def reset(self, key: str) -> None:
        await self.redis.delete(*self._keys(key))

    async def close(self) -> None:
        await self.redis.aclose()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    kwargs = dict(
        max_attempts=settings.rate_limit_max_attempts,
        window_seconds=settings.rate_limit_window_seconds,
        lockout_seconds=settings.rate_limit_lockout_seconds,
    )
    if settings.rate_limit_backend == "redis":
        return RedisRateLimiter(Redis.from_url(settings.redis_url, decode_responses=True), **kwargs)
    return InMemoryRateLimiter(**kwargs)
