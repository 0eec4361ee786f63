# rate_limit.py — Fixed-window rate limiting for gateway credentials
"""
Requests are counted per API key digest in fixed windows (100 per 60s by
default). The counting algorithm sits behind a ``CounterStore`` so a single
instance can keep its windows in memory while a horizontally scaled deployment
points every instance at one Redis (set ``RATE_LIMIT_REDIS_URL``).

The in-memory store is process-local and does not survive restarts; it is
abuse prevention, not a quota.
"""
import os
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from redis.asyncio import Redis

logger = logging.getLogger("crm-gateway.rate-limit")

RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_REDIS_URL = os.getenv("RATE_LIMIT_REDIS_URL", "")


@dataclass
class WindowState:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    reset_at: float


class CounterStore:
    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, WindowState] = {}
        self._lock = threading.Lock()
        self._next_sweep = 0.0

    def __len__(self) -> int:
        return len(self._windows)

    async def hit(self, key, limit, window_seconds):
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + window_seconds
            state = self._windows.get(key)
            if state is None or now > state.reset_at:
                state = WindowState(count=1, reset_at=now + window_seconds)
                self._windows[key] = state
                return RateLimitDecision(True, state.count, limit, state.reset_at)
            if state.count >= limit:
                # Rejected requests do not touch the window
                return RateLimitDecision(False, state.count, limit, state.reset_at)
            state.count += 1
            return RateLimitDecision(True, state.count, limit, state.reset_at)

    def _sweep(self, now: float) -> None:
        expired = [key for key, state in self._windows.items() if now > state.reset_at]
        for key in expired:
            del self._windows[key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._next_sweep = 0.0


# KEYS[1] = counter, ARGV[1] = limit, ARGV[2] = window in ms.
# Returns {allowed, count, pttl}; a full window is read but never incremented.
HIT_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count >= tonumber(ARGV[1]) then
  return {0, count, redis.call('PTTL', KEYS[1])}
end
count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return {1, count, redis.call('PTTL', KEYS[1])}
"""


class RedisCounterStore(CounterStore):
    """Shared fixed-window counter; the check and the INCR run atomically in one Lua script"""

    def __init__(self, url: Optional[str] = None, client: Optional[Redis] = None,
                 prefix: str = "crm-gateway:rate"):
        self._redis = client or Redis.from_url(url, decode_responses=True)
        self._prefix = prefix

    async def hit(self, key, limit, window_seconds):
        redis_key = f"{self._prefix}:{key}"
        allowed, count, ttl_ms = await self._redis.eval(HIT_SCRIPT, 1, redis_key, limit, window_seconds * 1000)
        reset_at = time.time() + max(int(ttl_ms), 0) / 1000.0
        return RateLimitDecision(bool(allowed), int(count), limit, reset_at)


class RateLimiter:
    def __init__(self, store: Optional[CounterStore] = None,
                 limit: int = RATE_LIMIT_REQUESTS, window_seconds: int = RATE_LIMIT_WINDOW_SECONDS):
        self.store = store or InMemoryCounterStore()
        self.limit = limit
        self.window_seconds = window_seconds

    @property
    def message(self) -> str:
        if self.window_seconds == 60:
            return f"Rate limit exceeded. Maximum {self.limit} requests per minute."
        return f"Rate limit exceeded. Maximum {self.limit} requests per {self.window_seconds} seconds."

    async def check(self, key: str) -> RateLimitDecision:
        decision = await self.store.hit(key, self.limit, self.window_seconds)
        if not decision.allowed:
            logger.warning(f"Rate limit hit for key {key[:8]} ({decision.limit}/{self.window_seconds}s)")
        return decision


def build_rate_limiter() -> RateLimiter:
    if RATE_LIMIT_REDIS_URL:
        logger.info("Rate limiter using shared Redis counter store")
        return RateLimiter(RedisCounterStore(RATE_LIMIT_REDIS_URL))
    return RateLimiter(InMemoryCounterStore())


rate_limiter = build_rate_limiter()


def get_rate_limiter() -> RateLimiter:
    """FastAPI dependency (overridable in tests)"""
    return rate_limiter
