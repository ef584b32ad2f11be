# backend/scopegate/ratelimit/limiter.py
"""
Fixed-window quota bookkeeping on top of the counter store.

A window is one counter key per (action, subject). The first increment of a
cycle creates the key and arms its expiry; later increments never touch the
expiry, so the window is anchored at first use and is not sliding. Expiry of
the key is the reset.

Checking and consuming are separate calls. Two concurrent requests can both
pass a check before either consumes, so a window can admit up to
limit + (requests in flight) actions. Only the increment itself is atomic.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable, List, Mapping, Optional, Tuple

from scopegate.core import config as core_config
from scopegate.domain.authorization import RateLimitRule, RateLimitStatus, utcnow

from .counter_store import CounterStore, RedisCounterStore
from .metrics import rl_decisions, rl_resets, rl_window_armed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionUsage:
    action: str
    current: int
    limit: int
    remaining: int
    percent_used: int
    reset_at: datetime


@dataclass(frozen=True)
class RateLimitAnalytics:
    subject_id: str
    timestamp: datetime
    actions: Tuple[ActionUsage, ...]

    @property
    def total_actions(self) -> int:
        return sum(usage.current for usage in self.actions)


class FixedWindowRateLimiter:
    """
    Rate limiter keyed by (action, subject_id).

    Stateless apart from its collaborators: all window state lives in the
    counter store, so any number of instances can share it.
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        namespace: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: CounterStore = store or RedisCounterStore()
        self._namespace = namespace
        self._clock = clock

    @property
    def namespace(self) -> str:
        return self._namespace or core_config.settings.rate_limit_namespace

    def key_for(self, action: str, subject_id: str) -> str:
        return f"{self.namespace}:rl:{action}:{subject_id}"

    async def check_rate_limit(
        self, action: str, subject_id: str, max_actions: int, window_minutes: int
    ) -> RateLimitStatus:
        """
        Report the current window without consuming from it.

        Args:
            action: Rate-limited action name (e.g. 'ticket:create')
            subject_id: Principal the quota belongs to
            max_actions: Actions allowed per window
            window_minutes: Window length

        Returns:
            RateLimitStatus where allowed means one more action fits in the window
        """
        rule = RateLimitRule(max_actions=max_actions, window_minutes=window_minutes)
        key = self.key_for(action, subject_id)

        current = await self.store.get(key) or 0
        ttl_seconds: Optional[float] = None
        if current > 0:
            ttl_seconds = await self.store.get_expiry(key)
            if ttl_seconds is None:
                ttl_seconds = await self._repair_unarmed_window(key, rule)

        now = self._clock()
        if ttl_seconds is not None:
            reset_at = now + timedelta(seconds=ttl_seconds)
        else:
            # Window not armed yet: project when it would end if armed now
            reset_at = now + timedelta(seconds=rule.window_seconds)

        allowed = current < rule.max_actions
        rl_decisions.labels(action=action, outcome="allow" if allowed else "block").inc()
        if not allowed:
            logger.info(
                f"[RATE-LIMIT] {action} exhausted for {subject_id}: "
                f"{current}/{rule.max_actions}, resets at {reset_at.isoformat()}"
            )

        return RateLimitStatus(
            allowed=allowed,
            current=current,
            limit=rule.max_actions,
            remaining=max(0, rule.max_actions - current),
            reset_at=reset_at,
        )

    async def _repair_unarmed_window(self, key: str, rule: RateLimitRule) -> Optional[float]:
        # A counter without expiry means the arming call after its first
        # increment never landed; without a TTL the window would never reset.
        logger.warning(f"[RATE-LIMIT] Window {key} has no expiry, arming it now")
        if await self.store.set_expiry_if_absent(key, rule.window_seconds):
            rl_window_armed.inc()
            return float(rule.window_seconds)
        return await self.store.get_expiry(key)

    async def increment_rate_limit(self, action: str, subject_id: str, window_minutes: int) -> int:
        """
        Consume one action from the current window.

        The call that observes the count move to 1 created the window and is
        the only one that arms its expiry. The arm is a no-op when an expiry is
        already set, so a retried or concurrent first call never extends it.

        Returns:
            Post-increment count
        """
        window_seconds = RateLimitRule(max_actions=1, window_minutes=window_minutes).window_seconds
        key = self.key_for(action, subject_id)

        count = await self.store.increment(key)
        if count == 1:
            if await self.store.set_expiry_if_absent(key, window_seconds):
                rl_window_armed.inc()
                logger.debug(f"[RATE-LIMIT] Armed {window_seconds}s window for {key}")
        return count

    async def reset_rate_limit(
        self, action: str, subject_id: str, window_minutes: Optional[int] = None
    ) -> None:
        """
        Administrative reset: drop the window so the next check reports zero.

        Not atomic with concurrent increments; an increment racing the delete
        simply opens a fresh window.
        """
        await self.store.delete(self.key_for(action, subject_id))
        rl_resets.inc()
        logger.info(f"[RATE-LIMIT] Reset {action} for {subject_id}")

    async def get_rate_limit_status(
        self, action: str, subject_id: str, max_actions: int, window_minutes: int
    ) -> RateLimitStatus:
        """Side-effect free status for monitoring; same shape as check_rate_limit."""
        return await self.check_rate_limit(action, subject_id, max_actions, window_minutes)

    async def get_rate_limit_analytics(
        self, subject_id: str, rules: Mapping[str, RateLimitRule]
    ) -> RateLimitAnalytics:
        """Usage across several rate-limited actions for one subject."""
        actions = list(rules.keys())
        statuses: List[RateLimitStatus] = await asyncio.gather(
            *(
                self.check_rate_limit(
                    action, subject_id, rules[action].max_actions, rules[action].window_minutes
                )
                for action in actions
            )
        )
        usages = tuple(
            ActionUsage(
                action=action,
                current=status.current,
                limit=status.limit,
                remaining=status.remaining,
                percent_used=status.percent_used,
                reset_at=status.reset_at,
            )
            for action, status in zip(actions, statuses)
        )
        return RateLimitAnalytics(subject_id=subject_id, timestamp=self._clock(), actions=usages)


__all__ = ["ActionUsage", "FixedWindowRateLimiter", "RateLimitAnalytics"]
