# backend/scopegate/services/permission_service.py
"""
Permission service for scoped, rate-limited authorization.

This service composes the grant store, the scope evaluator and the rate
limiter into a single decision. Deny outcomes are returned as
AuthorizationDecision values carrying a DecisionReason; only store faults
propagate, as StoreUnavailableException.

Checking never consumes quota. Callers consume with increment_rate_limit
once the protected action has actually succeeded.
"""

from datetime import datetime
import logging
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.enums import DecisionReason
from ..domain.authorization import (
    AuthorizationDecision,
    BulkGrantResult,
    PermissionCondition,
    PermissionGrant,
    RateLimitRule,
    RateLimitStatus,
    RequestContext,
    utcnow,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..ratelimit.limiter import FixedWindowRateLimiter, RateLimitAnalytics
from . import scope_evaluator
from .base import BaseService
from .grant_store import GrantInput, PermissionGrantStore

logger = logging.getLogger(__name__)


def rate_limit_action(resource: str, action: str) -> str:
    """Counter action name for a grant's quota, e.g. 'ticket:create'."""
    return f"{resource}:{action}"


class PermissionService(BaseService):
    """
    Service answering "may subject S perform action A on resource R now?".

    Stateless: every call evaluates current grant and counter store contents,
    so one instance can serve any number of concurrent requests.
    """

    def __init__(
        self,
        grant_store: Optional[PermissionGrantStore] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__()
        self.grant_store = grant_store or PermissionGrantStore()
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter()
        self._clock = clock

    def _record(
        self, resource: str, action: str, decision: AuthorizationDecision
    ) -> AuthorizationDecision:
        outcome = "granted" if decision.granted else decision.reason.value  # type: ignore[union-attr]
        prometheus_metrics.record_decision(resource, action, outcome)
        if not decision.granted:
            self.logger.info(f"[AUTHZ] Denied {resource}:{action} ({outcome}): {decision.message}")
        return decision

    @BaseService.measure_operation("check_permission")
    async def check_permission(
        self,
        subject_id: str,
        resource: str,
        action: str,
        context: Optional[RequestContext] = None,
    ) -> AuthorizationDecision:
        """
        Decide whether subject_id may perform action on resource.

        Args:
            subject_id: Principal making the request
            resource: Protected resource type (e.g. 'ticket')
            action: Protected action (e.g. 'create')
            context: Target ownership and attributes of the request

        Returns:
            AuthorizationDecision; when granted with a rate limit, the
            status of the window before this action is consumed

        Raises:
            StoreUnavailableException: grant store or counter store failed
        """
        # Without a context the action targets the subject's own records
        context = context or RequestContext(subject_id=subject_id, target_owner_id=subject_id)

        grant = await self.grant_store.find_grant(subject_id, resource, action)
        if grant is None:
            # No grant means no quota to look at: the counter store is not touched
            return self._record(
                resource,
                action,
                AuthorizationDecision.deny(
                    DecisionReason.NO_GRANT,
                    f"No permission for {resource}:{action}",
                ),
            )

        condition = grant.condition
        if not scope_evaluator.evaluate(condition.scope, context):
            return self._record(
                resource,
                action,
                AuthorizationDecision.deny(
                    DecisionReason.SCOPE_MISMATCH,
                    f"Target is outside the {condition.scope.value} scope",
                ),
            )

        if not scope_evaluator.within_time_restriction(condition.time_restriction, self._clock()):
            return self._record(
                resource,
                action,
                AuthorizationDecision.deny(
                    DecisionReason.TIME_RESTRICTED, "Outside allowed time window"
                ),
            )

        if condition.filters:
            mismatch = scope_evaluator.matches_filters(condition.filters, context.attributes)
            if mismatch is not None:
                return self._record(
                    resource,
                    action,
                    AuthorizationDecision.deny(
                        DecisionReason.FILTER_MISMATCH, f"Filter mismatch: {mismatch}"
                    ),
                )

        rule = condition.rate_limit
        if rule is None:
            return self._record(resource, action, AuthorizationDecision.allow(condition.scope))

        status = await self.rate_limiter.check_rate_limit(
            rate_limit_action(resource, action), subject_id, rule.max_actions, rule.window_minutes
        )
        if not status.allowed:
            return self._record(
                resource,
                action,
                AuthorizationDecision.deny(
                    DecisionReason.RATE_LIMIT_EXCEEDED,
                    f"Rate limit exceeded: {status.current}/{status.limit} actions per "
                    f"{rule.window_minutes} minutes",
                    rate_limit=rule,
                    rate_limit_status=status,
                ),
            )

        return self._record(
            resource,
            action,
            AuthorizationDecision.allow(condition.scope, rate_limit=rule, rate_limit_status=status),
        )

    async def check_permissions_all(
        self,
        subject_id: str,
        permissions: Sequence[Tuple[str, str]],
        context: Optional[RequestContext] = None,
    ) -> AuthorizationDecision:
        """Every (resource, action) must be granted; the first deny is returned."""
        decision = AuthorizationDecision.deny(
            DecisionReason.NO_GRANT, "No permissions were requested"
        )
        for resource, action in permissions:
            decision = await self.check_permission(subject_id, resource, action, context)
            if not decision.granted:
                return decision
        return decision

    async def check_permissions_any(
        self,
        subject_id: str,
        permissions: Sequence[Tuple[str, str]],
        context: Optional[RequestContext] = None,
    ) -> AuthorizationDecision:
        """At least one (resource, action) must be granted; the first grant is returned."""
        for resource, action in permissions:
            decision = await self.check_permission(subject_id, resource, action, context)
            if decision.granted:
                return decision
        return AuthorizationDecision.deny(
            DecisionReason.NO_GRANT, "User lacks any of the required permissions"
        )

    # Rate limit primitives, keyed by the counter action name

    async def check_rate_limit(
        self, action: str, subject_id: str, max_actions: int, window_minutes: int
    ) -> RateLimitStatus:
        return await self.rate_limiter.check_rate_limit(
            action, subject_id, max_actions, window_minutes
        )

    async def increment_rate_limit(self, action: str, subject_id: str, window_minutes: int) -> int:
        return await self.rate_limiter.increment_rate_limit(action, subject_id, window_minutes)

    async def reset_rate_limit(
        self, action: str, subject_id: str, window_minutes: Optional[int] = None
    ) -> None:
        await self.rate_limiter.reset_rate_limit(action, subject_id, window_minutes)

    async def get_rate_limit_status(
        self, action: str, subject_id: str, max_actions: int, window_minutes: int
    ) -> RateLimitStatus:
        return await self.rate_limiter.get_rate_limit_status(
            action, subject_id, max_actions, window_minutes
        )

    async def get_rate_limit_analytics(
        self, subject_id: str, rules: Mapping[str, RateLimitRule]
    ) -> RateLimitAnalytics:
        return await self.rate_limiter.get_rate_limit_analytics(subject_id, rules)

    # Grant administration

    async def grant_permission(
        self,
        subject_id: str,
        resource: str,
        action: str,
        condition: PermissionCondition,
        granted_by: str,
        expires_at: Optional[datetime] = None,
    ) -> PermissionGrant:
        return await self.grant_store.grant(
            subject_id, resource, action, condition, granted_by, expires_at=expires_at
        )

    async def bulk_grant_permissions(
        self, inputs: Iterable[GrantInput], granted_by: str
    ) -> BulkGrantResult:
        result = await self.grant_store.bulk_grant(inputs, granted_by)
        self.logger.info(
            f"[AUTHZ] Bulk grant by {granted_by}: {result.successful} ok, {result.failed} failed"
        )
        return result

    async def revoke_permission(self, subject_id: str, resource: str, action: str) -> bool:
        return await self.grant_store.revoke(subject_id, resource, action)

    async def list_subject_grants(self, subject_id: str) -> List[PermissionGrant]:
        return await self.grant_store.list_subject_grants(subject_id)

    async def list_grants_by_resource(self, resource: str) -> List[PermissionGrant]:
        return await self.grant_store.list_grants_by_resource(resource)
