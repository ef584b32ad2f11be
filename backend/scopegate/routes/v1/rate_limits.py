# backend/scopegate/routes/v1/rate_limits.py
"""
Rate limit routes - API v1

Monitoring and administration of fixed-window quotas under /api/v1/rate-limits.

Endpoints:
    GET /status/{action}   → Current window for the caller, no side effects
    POST /reset            → Administrative reset (requires rate-limit:reset)
    GET /analytics         → Usage across several actions for the caller
"""

import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, Query, Request, Response

from ...core.exceptions import ValidationException
from ...dependencies.authz import get_current_subject, get_permission_service
from ...domain.authorization import RateLimitRule, RequestContext
from ...middleware.authz_decorators import require_permission
from ...schemas.permission import (
    RateLimitAnalyticsResponse,
    RateLimitResetRequest,
    RateLimitResetResponse,
    RateLimitStatusResponse,
)
from ...services.permission_service import PermissionService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["rate-limits-v1"])


def parse_action_rules(specs: List[str]) -> Dict[str, RateLimitRule]:
    """
    Parse 'action:max_actions:window_minutes' entries.

    The action itself may contain colons ('ticket:create:10:60').
    """
    rules: Dict[str, RateLimitRule] = {}
    for spec in specs:
        parts = spec.rsplit(":", 2)
        if len(parts) != 3 or not parts[0]:
            raise ValidationException(
                f"Invalid rate limit spec: {spec}",
                code="INVALID_RATE_LIMIT_SPEC",
                details={"expected": "action:max_actions:window_minutes"},
            )
        action, max_actions, window_minutes = parts
        try:
            rules[action] = RateLimitRule(
                max_actions=int(max_actions), window_minutes=int(window_minutes)
            )
        except ValueError as exc:
            raise ValidationException(
                f"Invalid rate limit spec: {spec}", code="INVALID_RATE_LIMIT_SPEC"
            ) from exc
    return rules


async def reset_target_context(request: Request, subject_id: str) -> RequestContext:
    """The reset target is the subject whose quota is cleared."""
    # FastAPI has already read and validated the body; json() reuses it
    body = await request.json()
    return RequestContext(subject_id=subject_id, target_owner_id=body.get("subject_id"))


@router.get("/status/{action}", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(
    action: str,
    max_actions: int = Query(...),
    window_minutes: int = Query(...),
    subject_id: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> RateLimitStatusResponse:
    rule = RateLimitRule(max_actions=max_actions, window_minutes=window_minutes)
    status = await permission_service.get_rate_limit_status(
        action, subject_id, rule.max_actions, rule.window_minutes
    )
    return RateLimitStatusResponse.from_domain(status)


@router.post("/reset", response_model=RateLimitResetResponse)
@require_permission("rate-limit", "reset", context_extractor=reset_target_context)
async def reset_rate_limit(
    request: Request,
    response: Response,
    payload: RateLimitResetRequest,
    permission_service: PermissionService = Depends(get_permission_service),
) -> RateLimitResetResponse:
    await permission_service.reset_rate_limit(
        payload.action, payload.subject_id, payload.window_minutes
    )
    return RateLimitResetResponse(action=payload.action, subject_id=payload.subject_id)


@router.get("/analytics", response_model=RateLimitAnalyticsResponse)
async def get_rate_limit_analytics(
    actions: List[str] = Query(..., description="action:max_actions:window_minutes"),
    subject_id: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> RateLimitAnalyticsResponse:
    analytics = await permission_service.get_rate_limit_analytics(
        subject_id, parse_action_rules(actions)
    )
    return RateLimitAnalyticsResponse.from_domain(analytics)
