# backend/scopegate/routes/v1/permissions.py
"""
Permission routes - API v1

Grant administration and dry-run decisions under /api/v1/permissions.
All business logic delegated to PermissionService.

Grant administration is itself guarded: creating grants needs
permission:grant and revoking needs permission:revoke, scoped to the subject
whose grants change. Bulk grants span subjects and need ALL scope.

Endpoints:
    POST /grants                                   → Create or replace a grant
    POST /grants/bulk                              → Grant many, report failures
    DELETE /grants/{subject_id}/{resource}/{action} → Revoke a grant
    GET /grants/subject/{subject_id}               → Active grants of a subject
    GET /grants/resource/{resource}                → Active grants on a resource
    POST /check                                    → Decision without consuming quota
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Request, Response, status

from ...core.exceptions import InvalidConfigurationException, NotFoundException
from ...dependencies.authz import get_current_subject, get_permission_service
from ...domain.authorization import RequestContext
from ...middleware.authz_decorators import require_permission
from ...schemas.permission import (
    BulkGrantRequest,
    BulkGrantResponse,
    DecisionResponse,
    GrantCreate,
    GrantResponse,
    PermissionCheckRequest,
)
from ...services.grant_store import GrantInput
from ...services.permission_service import PermissionService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["permissions-v1"])


async def grantee_context(request: Request, subject_id: str) -> RequestContext:
    body = await request.json()
    return RequestContext(subject_id=subject_id, target_owner_id=body.get("subject_id"))


def revokee_context(request: Request, subject_id: str) -> RequestContext:
    return RequestContext(
        subject_id=subject_id, target_owner_id=request.path_params.get("subject_id")
    )


def any_subject_context(request: Request, subject_id: str) -> RequestContext:
    # No single target: only an ALL grant covers it
    return RequestContext(subject_id=subject_id)


@router.post("/grants", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
@require_permission("permission", "grant", context_extractor=grantee_context)
async def create_grant(
    request: Request,
    response: Response,
    payload: GrantCreate,
    subject_id: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> GrantResponse:
    """Create a grant; an existing grant for the same key is replaced entirely."""
    grant = await permission_service.grant_permission(
        payload.subject_id,
        payload.resource,
        payload.action,
        payload.condition.to_domain(),
        granted_by=subject_id,
        expires_at=payload.expires_at,
    )
    return GrantResponse.from_domain(grant)


@router.post("/grants/bulk", response_model=BulkGrantResponse)
@require_permission("permission", "grant", context_extractor=any_subject_context)
async def bulk_create_grants(
    request: Request,
    response: Response,
    payload: BulkGrantRequest,
    subject_id: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> BulkGrantResponse:
    inputs: List[GrantInput] = []
    rejected: List[str] = []
    for item in payload.grants:
        try:
            condition = item.condition.to_domain()
        except InvalidConfigurationException as exc:
            rejected.append(f"{item.subject_id}:{item.resource}:{item.action}: {exc.message}")
            continue
        inputs.append(
            GrantInput(
                subject_id=item.subject_id,
                resource=item.resource,
                action=item.action,
                condition=condition,
                expires_at=item.expires_at,
            )
        )

    result = await permission_service.bulk_grant_permissions(inputs, granted_by=subject_id)
    return BulkGrantResponse(
        successful=result.successful,
        failed=result.failed + len(rejected),
        errors=rejected + list(result.errors),
    )


@router.delete(
    "/grants/{subject_id}/{resource}/{action}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
@require_permission("permission", "revoke", context_extractor=revokee_context)
async def revoke_grant(
    request: Request,
    subject_id: str,
    resource: str,
    action: str,
    caller_id: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> Response:
    removed = await permission_service.revoke_permission(subject_id, resource, action)
    if not removed:
        raise NotFoundException(
            f"No grant for {resource}:{action} on {subject_id}",
            code="GRANT_NOT_FOUND",
        )
    logger.info(f"[AUTHZ] {caller_id} revoked {resource}:{action} from {subject_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/grants/subject/{subject_id}", response_model=List[GrantResponse])
async def list_subject_grants(
    subject_id: str,
    _: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> List[GrantResponse]:
    grants = await permission_service.list_subject_grants(subject_id)
    return [GrantResponse.from_domain(grant) for grant in grants]


@router.get("/grants/resource/{resource}", response_model=List[GrantResponse])
async def list_resource_grants(
    resource: str,
    _: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> List[GrantResponse]:
    grants = await permission_service.list_grants_by_resource(resource)
    return [GrantResponse.from_domain(grant) for grant in grants]


@router.post("/check", response_model=DecisionResponse)
async def check_permission(
    payload: PermissionCheckRequest,
    caller_id: str = Depends(get_current_subject),
    permission_service: PermissionService = Depends(get_permission_service),
) -> DecisionResponse:
    """Evaluate a permission for the caller (or a named subject) without consuming quota."""
    subject_id = payload.subject_id or caller_id
    decision = await permission_service.check_permission(
        subject_id, payload.resource, payload.action, payload.to_context(subject_id)
    )
    return DecisionResponse.from_domain(decision)
