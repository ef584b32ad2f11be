"""
Async Redis client used as the shared counter store.

One client per running event loop: redis.asyncio connections are bound to
the loop that opened them, and test runners spin up a fresh loop per test.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref

from redis.asyncio import Redis as AsyncRedis

from scopegate.core import config as core_config
from scopegate.core.exceptions import StoreUnavailableException

logger = logging.getLogger(__name__)

_clients_by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, AsyncRedis]" = (
    weakref.WeakKeyDictionary()
)
_locks_by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


async def get_redis() -> AsyncRedis:
    """
    Get or create the async Redis client for the running loop.

    Raises:
        StoreUnavailableException: when the server does not answer PING.
    """
    loop = asyncio.get_running_loop()

    existing = _clients_by_loop.get(loop)
    if existing is not None:
        return existing

    lock = _locks_by_loop.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _locks_by_loop[loop] = lock

    async with lock:
        existing = _clients_by_loop.get(loop)
        if existing is not None:
            return existing

        settings = core_config.settings
        client = AsyncRedis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.counter_store_timeout_seconds,
            socket_connect_timeout=settings.counter_store_timeout_seconds,
        )
        try:
            await asyncio.wait_for(client.ping(), timeout=settings.counter_store_timeout_seconds)
        except Exception as exc:
            logger.error("[REDIS-RL] Counter store FAILED to connect: %s", exc)
            with contextlib.suppress(Exception):
                await client.aclose()
            raise StoreUnavailableException("counter store", "connect", cause=exc) from exc

        _clients_by_loop[loop] = client
        logger.info("[REDIS-RL] Counter store client initialized and connected")
        return client


async def close_rate_limit_redis_client() -> None:
    """Close the counter store client bound to the running loop."""
    loop = asyncio.get_running_loop()

    client = _clients_by_loop.pop(loop, None)
    if client is None:
        return

    try:
        await client.aclose()
        with contextlib.suppress(Exception):
            await client.connection_pool.disconnect()
    finally:
        logger.info("[REDIS-RL] Counter store client closed")


__all__ = ["get_redis", "close_rate_limit_redis_client"]
