"""
Counter store client.

Thin wrapper over a Redis-compatible server exposing the four primitives the
rate limiter builds on. Each primitive is a single server-side operation, so
concurrent callers never lose updates. Every failure surfaces as
StoreUnavailableException; a failed read is never reported as a zero count.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from scopegate.core import config as core_config
from scopegate.core.exceptions import StoreUnavailableException

from .metrics import rl_store_errors
from .redis_backend import get_redis

logger = logging.getLogger(__name__)

# KEYS[1] = counter key
# ARGV[1] = ttl seconds
# Arms the expiry only when the key exists without one (TTL == -1).
# Returns 1 when the expiry was set, 0 otherwise.
ARM_EXPIRY_LUA = r"""
local ttl = redis.call('TTL', KEYS[1])
if ttl == -1 then
  return redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return 0
"""


class CounterStore(Protocol):
    async def increment(self, key: str) -> int:
        ...

    async def set_expiry_if_absent(self, key: str, ttl_seconds: int) -> bool:
        ...

    async def get(self, key: str) -> Optional[int]:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def get_expiry(self, key: str) -> Optional[float]:
        ...


class RedisCounterStore:
    """CounterStore backed by redis.asyncio with a bounded timeout per call."""

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[AsyncRedis]] = get_redis,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._client_factory = client_factory
        self._timeout_seconds = timeout_seconds

    @property
    def timeout_seconds(self) -> float:
        if self._timeout_seconds is not None:
            return self._timeout_seconds
        return core_config.settings.counter_store_timeout_seconds

    async def _call(self, operation: str, fn: Callable[[AsyncRedis], Awaitable[Any]]) -> Any:
        try:
            client = await self._client_factory()
            return await asyncio.wait_for(fn(client), timeout=self.timeout_seconds)
        except StoreUnavailableException:
            rl_store_errors.labels(operation=operation).inc()
            raise
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            rl_store_errors.labels(operation=operation).inc()
            logger.warning(f"[RATE-LIMIT] Counter store {operation} failed: {exc!r}")
            raise StoreUnavailableException("counter store", operation, cause=exc) from exc

    async def increment(self, key: str) -> int:
        """Atomically add 1 and return the post-increment value."""
        result = await self._call("increment", lambda r: r.incr(key))
        return int(result)

    async def set_expiry_if_absent(self, key: str, ttl_seconds: int) -> bool:
        """Set a TTL on key only when none is set; True when it took effect."""
        result = await self._call(
            "set_expiry_if_absent",
            lambda r: r.eval(ARM_EXPIRY_LUA, 1, key, int(ttl_seconds)),
        )
        return bool(int(result or 0))

    async def get(self, key: str) -> Optional[int]:
        result = await self._call("get", lambda r: r.get(key))
        if result is None:
            return None
        return int(result)

    async def delete(self, key: str) -> None:
        await self._call("delete", lambda r: r.delete(key))

    async def get_expiry(self, key: str) -> Optional[float]:
        """Seconds left on the key's TTL, or None when absent or not armed."""
        result = await self._call("get_expiry", lambda r: r.pttl(key))
        millis = int(result)
        if millis < 0:
            return None
        return millis / 1000.0


__all__ = ["ARM_EXPIRY_LUA", "CounterStore", "RedisCounterStore"]
