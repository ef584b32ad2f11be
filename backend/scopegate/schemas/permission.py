# backend/scopegate/schemas/permission.py
"""
Request and response schemas for grants, decisions and rate limits.

Rate limit values are deliberately plain integers here: non-positive values
are rejected by the domain layer with an INVALID_CONFIGURATION error, so a
single bad entry in a bulk request is reported instead of failing the batch.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..core.enums import DataScope, DecisionReason
from ..domain.authorization import (
    AuthorizationDecision,
    PermissionCondition,
    PermissionGrant,
    RateLimitRule,
    RateLimitStatus,
    RequestContext,
    TimeRestriction,
)
from ..ratelimit.limiter import RateLimitAnalytics
from .base import StandardizedModel, StrictModel


class RateLimitConfig(StrictModel):
    max_actions: int
    window_minutes: int


class TimeRestrictionSchema(StrictModel):
    start_time: Optional[str] = Field(default=None, description="HH:MM, inclusive (UTC)")
    end_time: Optional[str] = Field(default=None, description="HH:MM, inclusive (UTC)")
    days_of_week: Optional[List[int]] = Field(default=None, description="0 = Sunday ... 6 = Saturday")


class ConditionSchema(StrictModel):
    scope: DataScope = DataScope.OWN
    rate_limit: Optional[RateLimitConfig] = None
    time_restriction: Optional[TimeRestrictionSchema] = None
    filters: Optional[Dict[str, Any]] = None

    def to_domain(self) -> PermissionCondition:
        """Build the domain condition; raises InvalidConfigurationException on bad values."""
        return PermissionCondition(
            scope=self.scope,
            rate_limit=(
                RateLimitRule(
                    max_actions=self.rate_limit.max_actions,
                    window_minutes=self.rate_limit.window_minutes,
                )
                if self.rate_limit
                else None
            ),
            time_restriction=(
                TimeRestriction.from_dict(self.time_restriction.model_dump())
                if self.time_restriction
                else None
            ),
            filters=dict(self.filters or {}),
        )

    @classmethod
    def from_domain(cls, condition: PermissionCondition) -> "ConditionSchema":
        return cls.model_validate(condition.to_dict())


class GrantCreate(StrictModel):
    subject_id: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    condition: ConditionSchema = Field(default_factory=ConditionSchema)
    expires_at: Optional[datetime] = None


class BulkGrantRequest(StrictModel):
    grants: List[GrantCreate] = Field(..., min_length=1)


class GrantResponse(StandardizedModel):
    id: str
    subject_id: str
    resource: str
    action: str
    condition: ConditionSchema
    granted_by: str
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, grant: PermissionGrant) -> "GrantResponse":
        return cls(
            id=grant.id,
            subject_id=grant.subject_id,
            resource=grant.resource,
            action=grant.action,
            condition=ConditionSchema.from_domain(grant.condition),
            granted_by=grant.granted_by,
            expires_at=grant.expires_at,
            created_at=grant.created_at,
        )


class BulkGrantResponse(StandardizedModel):
    successful: int
    failed: int
    errors: List[str] = Field(default_factory=list)


class PermissionCheckRequest(StrictModel):
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    subject_id: Optional[str] = Field(
        default=None, description="Subject to check; defaults to the caller"
    )
    target_owner_id: Optional[str] = Field(
        default=None,
        description="Owner of the target; defaults to the checked subject without a team target",
    )
    shares_team: Optional[bool] = None
    subject_team_ids: List[str] = Field(default_factory=list)
    target_team_ids: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def to_context(self, subject_id: str) -> RequestContext:
        owner_id = self.target_owner_id
        if owner_id is None and self.shares_team is None and not self.target_team_ids:
            # No target named: a collection-level action on the subject's own records
            owner_id = subject_id
        return RequestContext(
            subject_id=subject_id,
            target_owner_id=owner_id,
            shares_team=self.shares_team,
            subject_team_ids=frozenset(self.subject_team_ids),
            target_team_ids=frozenset(self.target_team_ids),
            attributes=dict(self.attributes),
        )


class RateLimitStatusResponse(StandardizedModel):
    allowed: bool
    current: int
    limit: int
    remaining: int
    reset_at: datetime
    percent_used: int

    @classmethod
    def from_domain(cls, status: RateLimitStatus) -> "RateLimitStatusResponse":
        return cls(
            allowed=status.allowed,
            current=status.current,
            limit=status.limit,
            remaining=status.remaining,
            reset_at=status.reset_at,
            percent_used=status.percent_used,
        )


class DecisionResponse(StandardizedModel):
    granted: bool
    reason: Optional[DecisionReason] = None
    message: str = ""
    scope: Optional[DataScope] = None
    rate_limit_status: Optional[RateLimitStatusResponse] = None

    @classmethod
    def from_domain(cls, decision: AuthorizationDecision) -> "DecisionResponse":
        return cls(
            granted=decision.granted,
            reason=decision.reason,
            message=decision.message,
            scope=decision.scope,
            rate_limit_status=(
                RateLimitStatusResponse.from_domain(decision.rate_limit_status)
                if decision.rate_limit_status
                else None
            ),
        )


class RateLimitResetRequest(StrictModel):
    action: str = Field(..., min_length=1, description="Counter action, e.g. 'ticket:create'")
    subject_id: str = Field(..., min_length=1)
    window_minutes: Optional[int] = None


class RateLimitResetResponse(StandardizedModel):
    action: str
    subject_id: str
    reset: bool = True


class ActionUsageResponse(StandardizedModel):
    action: str
    current: int
    limit: int
    remaining: int
    percent_used: int
    reset_at: datetime


class RateLimitAnalyticsResponse(StandardizedModel):
    subject_id: str
    timestamp: datetime
    total_actions: int
    actions: List[ActionUsageResponse]

    @classmethod
    def from_domain(cls, analytics: RateLimitAnalytics) -> "RateLimitAnalyticsResponse":
        return cls(
            subject_id=analytics.subject_id,
            timestamp=analytics.timestamp,
            total_actions=analytics.total_actions,
            actions=[
                ActionUsageResponse(
                    action=usage.action,
                    current=usage.current,
                    limit=usage.limit,
                    remaining=usage.remaining,
                    percent_used=usage.percent_used,
                    reset_at=usage.reset_at,
                )
                for usage in analytics.actions
            ],
        )


class RejectionPayload(StandardizedModel):
    """Body of a 401/403/429/503 produced by the enforcement layer."""

    error: str
    reason: Optional[DecisionReason] = None
    message: str = ""
    limit: Optional[int] = None
    current: Optional[int] = None
    reset_at: Optional[datetime] = Field(default=None, serialization_alias="resetAt")
    retry_after: Optional[int] = Field(default=None, serialization_alias="retryAfter")

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HealthResponse(StandardizedModel):
    status: str
    environment: str
    failure_policy: str
