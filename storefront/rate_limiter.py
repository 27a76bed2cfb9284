"""
Fixed-window rate limiting for public write endpoints

One RateLimiter is built per process (see main.create_app) and handed to the
FastAPI dependencies through app.state. Counters live in an injectable store:
in-memory by default, Redis when REDIS_URL is configured and several workers
should share counters. Limiting is approximate - races between workers may
let a few extra requests through.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional, Protocol

import redis
from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    retry_after: int


class RateLimitStore(Protocol):
    def get(self, key: str) -> Optional[RateLimitEntry]: ...

    def set(self, key: str, entry: RateLimitEntry, ttl_seconds: int) -> None: ...


class MemoryRateLimitStore:
    """Per-process counters. Entries for elapsed windows are overwritten, not kept."""

    def __init__(self):
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, entry: RateLimitEntry, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = entry

    def purge(self, now: float) -> int:
        """Drop entries whose window has elapsed"""
        with self._lock:
            expired = [k for k, v in self._entries.items() if now >= v.reset_time]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug(f"🧹 Cleaned up {len(expired)} expired rate limit entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore:
    """Counters shared across workers. Redis expiry replaces elapsed windows."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisRateLimitStore":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=15,
            socket_timeout=30,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=20,
        )
        return cls(client)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        raw = self._client.hgetall(key)
        if not raw:
            return None
        return RateLimitEntry(count=int(raw["count"]), reset_time=float(raw["reset_time"]))

    def set(self, key: str, entry: RateLimitEntry, ttl_seconds: int) -> None:
        pipe = self._client.pipeline()
        pipe.hset(key, mapping={"count": entry.count, "reset_time": entry.reset_time})
        pipe.expire(key, max(1, ttl_seconds))
        pipe.execute()


class RateLimiter:
    PURGE_INTERVAL_SECONDS = 60

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.store = store if store is not None else MemoryRateLimitStore()
        self._clock = clock
        self._last_purge = clock()

    def hit(self, key: str) -> RateLimitResult:
        """Count one request against key and report whether it is allowed"""
        now = self._clock()
        self._maybe_purge(now)

        entry = self.store.get(key)
        if entry is None or now >= entry.reset_time:
            entry = RateLimitEntry(count=0, reset_time=now + self.window_seconds)

        allowed = entry.count < self.limit
        if allowed:
            entry.count += 1

        ttl = max(0, int(entry.reset_time - now))
        self.store.set(key, entry, ttl)
        return RateLimitResult(allowed=allowed, count=entry.count, retry_after=ttl)

    def _maybe_purge(self, now: float) -> None:
        if now - self._last_purge < self.PURGE_INTERVAL_SECONDS:
            return
        self._last_purge = now
        purge = getattr(self.store, "purge", None)
        if purge is not None:
            purge(now)


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_rate_limiter(key_prefix: str = "rate_limit"):
    """
    Create a per-IP rate limiter dependency backed by the process limiter

    Example usage:
        @router.post("/api/cart/items")
        async def add_item(..., _: None = Depends(create_rate_limiter("cart"))):
            ...
    """

    async def rate_limiter(request: Request):
        limiter: RateLimiter = request.app.state.rate_limiter
        client_ip = get_client_ip(request)
        key = f"{key_prefix}:{client_ip}"

        try:
            result = limiter.hit(key)
        except redis.RedisError as e:
            # Shared store is down - let the request through rather than block checkout
            logger.warning(f"⚠️ Rate limit store unavailable, allowing request: {e}")
            return

        if not result.allowed:
            logger.warning(
                f"🚫 Rate limit EXCEEDED for {key} - {result.count}/{limiter.limit} requests used"
            )
            raise HTTPException(
                status_code=429,
                detail={
                    "message": f"Rate limit exceeded. Maximum {limiter.limit} requests per {limiter.window_seconds} seconds.",
                    "retry_after": result.retry_after,
                },
                headers={"Retry-After": str(result.retry_after)},
            )

        request.state.rate_limit_remaining = limiter.limit - result.count

    return rate_limiter
