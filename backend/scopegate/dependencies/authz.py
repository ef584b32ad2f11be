# backend/scopegate/dependencies/authz.py
"""
Authorization dependencies for FastAPI endpoints.

The service and enforcer are application-scoped: they hold no request state,
so one instance per app is shared by every request.
"""

from typing import Optional

from fastapi import Depends, Request

from ..core.exceptions import UnauthorizedException
from ..middleware.permission_enforcer import PermissionEnforcer
from ..services.permission_service import PermissionService

SUBJECT_HEADER = "X-Subject-Id"


def resolve_subject_id(request: Request) -> Optional[str]:
    """
    Identify the calling subject.

    An upstream authentication layer sets request.state.subject_id; behind a
    trusted gateway the X-Subject-Id header is accepted instead.
    """
    subject_id = getattr(request.state, "subject_id", None)
    if subject_id:
        return str(subject_id)
    header_value = request.headers.get(SUBJECT_HEADER)
    if header_value and header_value.strip():
        return header_value.strip()
    return None


def get_current_subject(request: Request) -> str:
    """
    Get the calling subject or fail with 401.

    Raises:
        HTTPException: 401 when no subject can be resolved
    """
    subject_id = resolve_subject_id(request)
    if subject_id is None:
        raise UnauthorizedException(
            "Could not identify the calling subject", code="SUBJECT_REQUIRED"
        ).to_http_exception()
    return subject_id


def get_permission_service(request: Request) -> PermissionService:
    service = getattr(request.app.state, "permission_service", None)
    if service is None:
        service = PermissionService()
        request.app.state.permission_service = service
    return service


def get_permission_enforcer(
    request: Request, service: PermissionService = Depends(get_permission_service)
) -> PermissionEnforcer:
    enforcer = getattr(request.app.state, "permission_enforcer", None)
    if enforcer is None:
        enforcer = PermissionEnforcer(service)
        request.app.state.permission_enforcer = enforcer
    return enforcer
