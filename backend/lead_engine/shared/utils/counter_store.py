"""
Atomic Fixed-Window Counter Store

The rate limiter needs "check every window, then increment every window" as
one atomic step visible to all worker processes.

Implementations:
- RedisCounterStore: one Lua script per acquisition (shared across workers)
- InMemoryCounterStore: same contract inside one process (dev/tests only)

IMPORTANT: InMemoryCounterStore enforces ceilings per process. With more
than one worker the tenant ceiling is multiplied; configure REDIS_URL.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from redis.asyncio import Redis

logger = logging.getLogger("counter_store")


@dataclass(frozen=True)
class WindowSpec:
    """One counter window: key, ceiling, and lifetime in seconds."""
    key: str
    limit: int
    ttl_seconds: int


@dataclass
class CounterDecision:
    granted: bool
    retry_after: float = 0.0  # seconds until every exhausted window has rolled


class CounterStore:
    """Contract shared by both stores."""

    async def acquire(self, windows: Sequence[WindowSpec]) -> CounterDecision:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ============================================
# REDIS (shared across processes)
# ============================================

# KEYS = window keys, ARGV = limit_1, ttl_ms_1, limit_2, ttl_ms_2, ...
# Returns -1 when granted, otherwise the longest remaining TTL (ms) among exhausted windows.
ACQUIRE_WINDOWS_LUA = """
local blocked = -1
for i, key in ipairs(KEYS) do
    local limit = tonumber(ARGV[i * 2 - 1])
    local ttl_ms = tonumber(ARGV[i * 2])
    local count = tonumber(redis.call('GET', key) or '0')
    if count >= limit then
        local remaining = redis.call('PTTL', key)
        if remaining < 0 then
            redis.call('PEXPIRE', key, ttl_ms)
            remaining = ttl_ms
        end
        if remaining > blocked then
            blocked = remaining
        end
    end
end
if blocked >= 0 then
    return blocked
end
for i, key in ipairs(KEYS) do
    local ttl_ms = tonumber(ARGV[i * 2])
    local n = redis.call('INCR', key)
    if n == 1 then
        redis.call('PEXPIRE', key, ttl_ms)
    end
end
return -1
"""


class RedisCounterStore(CounterStore):
    """Counter windows kept in Redis; the Lua script makes check-and-increment atomic."""

    def __init__(self, redis: Redis):
        self.redis = redis
        self._script = redis.register_script(ACQUIRE_WINDOWS_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def acquire(self, windows: Sequence[WindowSpec]) -> CounterDecision:
        if not windows:
            return CounterDecision(granted=True)

        keys = [w.key for w in windows]
        args: List[int] = []
        for w in windows:
            args.extend([w.limit, w.ttl_seconds * 1000])

        blocked_ms = int(await self._script(keys=keys, args=args))
        if blocked_ms < 0:
            return CounterDecision(granted=True)
        return CounterDecision(granted=False, retry_after=blocked_ms / 1000.0)

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("Redis counter store closed")


# ============================================
# IN-MEMORY (single process)
# ============================================

@dataclass
class _Counter:
    count: int
    expires_at: float


class InMemoryCounterStore(CounterStore):
    """
    Expiring counters behind an asyncio.Lock.

    Usage:
        store = InMemoryCounterStore()
        decision = await store.acquire([WindowSpec("ratelimit:t1:MOCK:second", 1, 1)])
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._counters: Dict[str, _Counter] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or time.monotonic

    def _live(self, key: str, now: float) -> Optional[_Counter]:
        counter = self._counters.get(key)
        if counter is not None and now >= counter.expires_at:
            self._counters.pop(key, None)
            return None
        return counter

    async def acquire(self, windows: Sequence[WindowSpec]) -> CounterDecision:
        async with self._lock:
            now = self._clock()

            blocked = -1.0
            for w in windows:
                counter = self._live(w.key, now)
                if counter is not None and counter.count >= w.limit:
                    blocked = max(blocked, counter.expires_at - now)
            if blocked >= 0:
                return CounterDecision(granted=False, retry_after=blocked)

            for w in windows:
                counter = self._live(w.key, now)
                if counter is None:
                    self._counters[w.key] = _Counter(count=1, expires_at=now + w.ttl_seconds)
                else:
                    counter.count += 1
            return CounterDecision(granted=True)


def build_counter_store(redis_url: str) -> CounterStore:
    """Redis when configured, otherwise the per-process fallback (with a warning)."""
    if redis_url:
        logger.info("Rate limiter using Redis counter store")
        return RedisCounterStore.from_url(redis_url)

    logger.warning(
        "REDIS_URL not configured; rate limits are enforced per process only. "
        "Do not run more than one worker in this mode."
    )
    return InMemoryCounterStore()
