# backend/scopegate/middleware/permission_enforcer.py
"""
Permission enforcement.

Bridges PermissionService into a request pipeline:
- denies become structured rejections (429 for exhausted quotas, 403 otherwise)
- granted requests run the handler, and quota is consumed only afterwards
- quota telemetry headers accompany every outcome of a rate-limited grant
- requests let through by fail_open carry X-Authz-Degraded instead of a
  quota they could not measure
- store outages go through the configured failure policy

The core here is framework-neutral; the FastAPI decorators live in
authz_decorators.
"""

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from ..core import config as core_config
from ..core.enums import DecisionReason, FailurePolicy
from ..core.exceptions import StoreUnavailableException
from ..domain.authorization import (
    AuthorizationDecision,
    RateLimitRule,
    RateLimitStatus,
    RequestContext,
    utcnow,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..ratelimit.headers import degraded_headers, rate_limit_headers
from ..schemas.permission import RejectionPayload
from ..services.permission_service import PermissionService, rate_limit_action

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_EXCEEDED_ERROR = "Rate limit exceeded"
PERMISSION_DENIED_ERROR = "Permission denied"
AUTHORIZATION_UNAVAILABLE_ERROR = "Authorization unavailable"


class AuthorizationRejected(Exception):
    """A guarded request was refused; carries the HTTP status, body and headers."""

    def __init__(
        self,
        status_code: int,
        payload: RejectionPayload,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(payload.message or payload.error)
        self.status_code = status_code
        self.payload = payload
        self.headers = headers or {}


@dataclass
class EnforcementResult(Generic[T]):
    """Handler result plus the headers to attach to the response."""

    result: T
    headers: Dict[str, str] = field(default_factory=dict)
    decision: Optional[AuthorizationDecision] = None
    degraded: bool = False


def handler_succeeded(result: Any) -> bool:
    """A handler counts as successful unless it returned an error response."""
    status_code = getattr(result, "status_code", None)
    return not isinstance(status_code, int) or status_code < 400


class PermissionEnforcer:
    """
    Runs a handler behind check_permission and consumes quota after it.

    Args:
        service: Decision engine
        failure_policy: Overrides settings.authz_failure_policy when given
        succeeded: Predicate deciding whether a handler result consumes quota
    """

    def __init__(
        self,
        service: Optional[PermissionService] = None,
        failure_policy: Optional[FailurePolicy] = None,
        succeeded: Callable[[Any], bool] = handler_succeeded,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.service = service or PermissionService()
        self._failure_policy = failure_policy
        self._succeeded = succeeded
        self._clock = clock

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._failure_policy or core_config.settings.authz_failure_policy

    async def enforce(
        self,
        subject_id: str,
        resource: str,
        action: str,
        context: Optional[RequestContext],
        handler: Callable[[], Awaitable[T]],
    ) -> EnforcementResult[T]:
        """
        Check, run, then consume.

        Raises:
            AuthorizationRejected: denied, or a store failed under fail_closed
        """
        try:
            decision = await self.service.check_permission(subject_id, resource, action, context)
        except StoreUnavailableException as exc:
            self._degrade("check", exc, f"{resource}:{action}", subject_id)
            result = await handler()
            return EnforcementResult(
                result=result, headers=degraded_headers("check"), degraded=True
            )

        if not decision.granted:
            raise self._rejection(decision)

        rule = decision.rate_limit
        if rule is None or decision.rate_limit_status is None:
            result = await handler()
            return EnforcementResult(result=result, decision=decision)

        outcome = await self._run_and_consume(
            rate_limit_action(resource, action),
            subject_id,
            rule,
            decision.rate_limit_status,
            handler,
        )
        outcome.decision = decision
        return outcome

    async def enforce_rate_limit(
        self,
        subject_id: str,
        action: str,
        rule: RateLimitRule,
        handler: Callable[[], Awaitable[T]],
    ) -> EnforcementResult[T]:
        """Standalone quota for an action that is not tied to a grant."""
        try:
            status = await self.service.check_rate_limit(
                action, subject_id, rule.max_actions, rule.window_minutes
            )
        except StoreUnavailableException as exc:
            self._degrade("check", exc, action, subject_id)
            result = await handler()
            return EnforcementResult(
                result=result, headers=degraded_headers("check"), degraded=True
            )

        if not status.allowed:
            raise self._rejection(
                AuthorizationDecision.deny(
                    DecisionReason.RATE_LIMIT_EXCEEDED,
                    f"Rate limit exceeded: {status.current}/{status.limit} actions per "
                    f"{rule.window_minutes} minutes",
                    rate_limit=rule,
                    rate_limit_status=status,
                )
            )

        return await self._run_and_consume(action, subject_id, rule, status, handler)

    async def _run_and_consume(
        self,
        action: str,
        subject_id: str,
        rule: RateLimitRule,
        status: RateLimitStatus,
        handler: Callable[[], Awaitable[T]],
    ) -> EnforcementResult[T]:
        result = await handler()
        if not self._succeeded(result):
            # Failed actions do not spend quota
            return EnforcementResult(result=result, headers=rate_limit_headers(status))

        try:
            count = await self.service.increment_rate_limit(
                action, subject_id, rule.window_minutes
            )
        except StoreUnavailableException as exc:
            # Raises under fail_closed even though the handler already ran
            self._degrade("consume", exc, action, subject_id)
            return EnforcementResult(
                result=result,
                headers={
                    **rate_limit_headers(status, remaining=status.remaining - 1),
                    **degraded_headers("consume"),
                },
                degraded=True,
            )

        return EnforcementResult(
            result=result,
            headers=rate_limit_headers(status, remaining=rule.max_actions - count),
        )

    def _degrade(
        self, stage: str, exc: StoreUnavailableException, action: str, subject_id: str
    ) -> None:
        policy = self.failure_policy
        prometheus_metrics.record_degradation(policy.value, stage)
        if policy == FailurePolicy.FAIL_CLOSED:
            logger.error(
                f"[AUTHZ-DEGRADED] {exc.store} unavailable during {stage} of {action} "
                f"for {subject_id}; rejecting (fail_closed)"
            )
            raise AuthorizationRejected(
                503,
                RejectionPayload(
                    error=AUTHORIZATION_UNAVAILABLE_ERROR,
                    reason=DecisionReason.STORE_UNAVAILABLE,
                    message=exc.message,
                ),
            )
        logger.warning(
            f"[AUTHZ-DEGRADED] {exc.store} unavailable during {stage} of {action} "
            f"for {subject_id}; allowing (fail_open)"
        )

    def _rejection(self, decision: AuthorizationDecision) -> AuthorizationRejected:
        status = decision.rate_limit_status
        if decision.reason == DecisionReason.RATE_LIMIT_EXCEEDED and status is not None:
            now = self._clock()
            retry_after = status.retry_after_seconds(now)
            return AuthorizationRejected(
                429,
                RejectionPayload(
                    error=RATE_LIMIT_EXCEEDED_ERROR,
                    reason=decision.reason,
                    message=decision.message,
                    limit=status.limit,
                    current=status.current,
                    reset_at=status.reset_at,
                    retry_after=retry_after,
                ),
                headers=rate_limit_headers(status, include_retry_after=True, now=now),
            )

        return AuthorizationRejected(
            403,
            RejectionPayload(
                error=PERMISSION_DENIED_ERROR,
                reason=decision.reason,
                message=decision.message,
            ),
        )
