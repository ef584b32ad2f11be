"""Fixed-window rate limiting over a shared Redis counter store."""

from .counter_store import CounterStore, RedisCounterStore
from .limiter import ActionUsage, FixedWindowRateLimiter, RateLimitAnalytics

__all__ = [
    "ActionUsage",
    "CounterStore",
    "FixedWindowRateLimiter",
    "RateLimitAnalytics",
    "RedisCounterStore",
]
