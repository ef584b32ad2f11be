from .authorization import (
    AuthorizationDecision,
    BulkGrantResult,
    PermissionCondition,
    PermissionGrant,
    RateLimitRule,
    RateLimitStatus,
    RequestContext,
    TimeRestriction,
)

__all__ = [
    "AuthorizationDecision",
    "BulkGrantResult",
    "PermissionCondition",
    "PermissionGrant",
    "RateLimitRule",
    "RateLimitStatus",
    "RequestContext",
    "TimeRestriction",
]
