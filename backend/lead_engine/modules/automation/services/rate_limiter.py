"""
Rate Limiter
Per tenant+provider fixed windows (second / minute / hour) over the shared
counter store.

A denial is not an error: the dispatcher reschedules the run to
now + retry_after and tries again later.
"""
import logging
from typing import List

from lead_engine.modules.automation.schemas.automation_schemas import AcquireResult, RateLimitConfig
from lead_engine.shared.core.constants import RATE_LIMIT_KEY_PREFIX, RATE_LIMIT_WINDOWS
from lead_engine.shared.utils.counter_store import CounterStore, WindowSpec

logger = logging.getLogger("rate_limiter")


def window_key(tenant_id: str, provider: str, window_name: str) -> str:
    """ratelimit:{tenant}:{provider}:{second|minute|hour}"""
    return f"{RATE_LIMIT_KEY_PREFIX}:{tenant_id}:{provider}:{window_name}"


class RateLimiter:
    """
    tryAcquire(tenant, provider) -> {granted, retry_after}

    All windows are checked and incremented in one atomic store call, so a
    denied request never consumes capacity in the windows that had room.
    """

    def __init__(self, store: CounterStore):
        self.store = store

    def _windows(self, tenant_id: str, provider: str, limits: RateLimitConfig) -> List[WindowSpec]:
        ceilings = {
            "second": limits.per_second,
            "minute": limits.per_minute,
            "hour": limits.per_hour,
        }
        return [
            WindowSpec(key=window_key(tenant_id, provider, name), limit=ceilings[name], ttl_seconds=seconds)
            for name, seconds in RATE_LIMIT_WINDOWS
            if ceilings[name] > 0  # 0 disables the window
        ]

    async def try_acquire(self, tenant_id: str, provider: str, limits: RateLimitConfig) -> AcquireResult:
        """
        Take one send token for (tenant, provider).

        Returns:
            AcquireResult(granted=True) or AcquireResult(granted=False, retry_after=seconds),
            where retry_after is how long until every exhausted window has rolled over.
        """
        decision = await self.store.acquire(self._windows(tenant_id, provider, limits))
        if decision.granted:
            return AcquireResult(granted=True)

        # Never ask for a reschedule shorter than a second
        retry_after = max(decision.retry_after, 1.0)
        logger.info(f"Rate limit reached for tenant={tenant_id} provider={provider}; retry in {retry_after:.1f}s")
        return AcquireResult(granted=False, retry_after=retry_after)
