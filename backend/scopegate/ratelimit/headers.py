from datetime import datetime
from typing import Optional

from scopegate.domain.authorization import RateLimitStatus, utcnow


def rate_limit_headers(
    status: RateLimitStatus,
    *,
    remaining: Optional[int] = None,
    include_retry_after: bool = False,
    now: Optional[datetime] = None,
) -> dict[str, str]:
    """Quota telemetry headers; X-RateLimit-Reset is an ISO-8601 timestamp."""
    value = status.remaining if remaining is None else remaining
    headers = {
        "X-RateLimit-Limit": str(status.limit),
        "X-RateLimit-Remaining": str(max(value, 0)),
        "X-RateLimit-Reset": status.reset_at.isoformat(),
    }
    if include_retry_after:
        headers["Retry-After"] = str(status.retry_after_seconds(now or utcnow()))
    return headers


DEGRADED_HEADER = "X-Authz-Degraded"


def degraded_headers(stage: str) -> dict[str, str]:
    """Marks a response let through under fail_open; the value is the failed stage."""
    return {DEGRADED_HEADER: stage}
