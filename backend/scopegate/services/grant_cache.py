# backend/scopegate/services/grant_cache.py
"""
Grant caching service.

Caches grant lookups in Redis to take the relational store off the hot path
of every guarded request. Only present grants are cached; a miss always
goes to the store, so a fresh grant is visible immediately.

Every key carries a generation counter. Grant and revoke bump it and drop the
entry in one script; a read-through fill only lands when the generation it
saw before reading the store is still current. A fill that raced a change is
therefore discarded instead of resurrecting the old grant.

Reads and fills are best effort: a Redis failure is logged and reported as a
miss, never as an absent grant. Invalidation is not: its failure is raised so
a change is never reported as done while the cache still serves the old grant.
"""

import contextlib
import json
import logging
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis as AsyncRedis

from ..core import config as core_config
from ..core.exceptions import StoreUnavailableException
from ..domain.authorization import PermissionGrant
from ..ratelimit.redis_backend import get_redis

logger = logging.getLogger(__name__)

GRANT_CACHE = "grant cache"

# Generation keys must outlive any in-flight fill; a day is far beyond the
# grant store timeout.
GENERATION_TTL_SECONDS = 86400

# KEYS[1] = generation key, KEYS[2] = entry key
# ARGV[1] = generation seen before the store read, ARGV[2] = ttl, ARGV[3] = value
FILL_IF_CURRENT_LUA = r"""
local current = redis.call('GET', KEYS[1]) or '0'
if current ~= ARGV[1] then
  return 0
end
redis.call('SETEX', KEYS[2], tonumber(ARGV[2]), ARGV[3])
return 1
"""

# KEYS[1] = generation key, KEYS[2] = entry key
# ARGV[1] = generation ttl
INVALIDATE_LUA = r"""
local generation = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
redis.call('DEL', KEYS[2])
return generation
"""


class GrantCache:
    def __init__(
        self,
        client_factory: Callable[[], Awaitable[AsyncRedis]] = get_redis,
        ttl_seconds: Optional[int] = None,
        namespace: Optional[str] = None,
    ) -> None:
        self._client_factory = client_factory
        self._ttl_seconds = ttl_seconds
        self._namespace = namespace

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds or core_config.settings.grant_cache_ttl_seconds

    @property
    def namespace(self) -> str:
        return self._namespace or core_config.settings.rate_limit_namespace

    def key_for(self, subject_id: str, resource: str, action: str) -> str:
        return f"{self.namespace}:grant:{subject_id}:{resource}:{action}"

    def generation_key_for(self, subject_id: str, resource: str, action: str) -> str:
        return f"{self.namespace}:grant-gen:{subject_id}:{resource}:{action}"

    async def get(self, subject_id: str, resource: str, action: str) -> Optional[PermissionGrant]:
        """
        Get a grant from the cache.

        Returns:
            The cached grant, or None on a miss, an expired entry or a Redis error
        """
        key = self.key_for(subject_id, resource, action)
        try:
            redis = await self._client_factory()
            cached = await redis.get(key)
        except Exception as e:
            logger.warning(f"[GRANT-CACHE] Error reading cache: {e}")
            return None

        if not cached:
            logger.debug(f"[GRANT-CACHE] MISS for {key}")
            return None

        try:
            grant = PermissionGrant.from_dict(json.loads(cached))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[GRANT-CACHE] Discarding unreadable entry {key}: {e}")
            with contextlib.suppress(StoreUnavailableException):
                await self.invalidate(subject_id, resource, action)
            return None

        if grant.is_expired():
            return None
        logger.debug(f"[GRANT-CACHE] HIT for {key}")
        return grant

    async def generation(self, subject_id: str, resource: str, action: str) -> Optional[str]:
        """
        Current generation of the key, read before a store lookup.

        Returns:
            The generation token, or None when Redis cannot be read (skip the fill)
        """
        try:
            redis = await self._client_factory()
            value = await redis.get(self.generation_key_for(subject_id, resource, action))
        except Exception as e:
            logger.warning(f"[GRANT-CACHE] Error reading generation: {e}")
            return None
        return str(value) if value is not None else "0"

    async def set(self, grant: PermissionGrant, generation: str) -> bool:
        """
        Cache a grant read from the store, unless the key changed since.

        Returns:
            True when the entry was written
        """
        key = self.key_for(grant.subject_id, grant.resource, grant.action)
        try:
            redis = await self._client_factory()
            written = await redis.eval(
                FILL_IF_CURRENT_LUA,
                2,
                self.generation_key_for(grant.subject_id, grant.resource, grant.action),
                key,
                generation,
                self.ttl_seconds,
                json.dumps(grant.to_dict()),
            )
        except Exception as e:
            logger.warning(f"[GRANT-CACHE] Error writing cache: {e}")
            return False

        if not int(written or 0):
            logger.debug(f"[GRANT-CACHE] Skipped stale fill of {key}")
            return False
        logger.debug(f"[GRANT-CACHE] SET {key}")
        return True

    async def invalidate(self, subject_id: str, resource: str, action: str) -> None:
        """
        Invalidate a cached grant and any fill still in flight for it.

        Call this whenever the grant for the key changes.

        Raises:
            StoreUnavailableException: when Redis did not apply the invalidation
        """
        key = self.key_for(subject_id, resource, action)
        try:
            redis = await self._client_factory()
            await redis.eval(
                INVALIDATE_LUA,
                2,
                self.generation_key_for(subject_id, resource, action),
                key,
                GENERATION_TTL_SECONDS,
            )
        except Exception as e:
            logger.error(f"[GRANT-CACHE] Error invalidating {key}: {e}")
            raise StoreUnavailableException(GRANT_CACHE, "invalidate", cause=e) from e
        logger.debug(f"[GRANT-CACHE] Invalidated {key}")
