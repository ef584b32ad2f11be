# backend/scopegate/middleware/authz_decorators.py
"""
FastAPI route decorators for permission and quota enforcement.

Example:
    @router.post("/tickets")
    @require_permission("ticket", "create")
    async def create_ticket(request: Request, response: Response, payload: TicketCreate):
        ...

    @router.post("/exports")
    @rate_limited("export:generate", max_actions=5, window_minutes=60)
    async def generate_export(request: Request):
        ...

The endpoint must accept the Request. Quota headers are written to the
returned Response, or to an injected `response: Response` parameter.
"""

from functools import wraps
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..dependencies.authz import (
    get_current_subject,
    get_permission_enforcer,
    get_permission_service,
)
from ..domain.authorization import RateLimitRule, RequestContext
from .permission_enforcer import AuthorizationRejected, EnforcementResult, PermissionEnforcer

logger = logging.getLogger(__name__)

ContextExtractor = Callable[[Request, str], Union[RequestContext, Awaitable[RequestContext]]]


def _find_instance(args: Tuple[Any, ...], kwargs: Dict[str, Any], cls: type) -> Any:
    for arg in args:
        if isinstance(arg, cls):
            return arg
    for value in kwargs.values():
        if isinstance(value, cls):
            return value
    return None


def _enforcer_for(request: Request) -> PermissionEnforcer:
    return get_permission_enforcer(request, get_permission_service(request))


def _apply_headers(outcome: EnforcementResult[Any], injected: Optional[Response]) -> Any:
    result = outcome.result
    if outcome.headers:
        target = result if isinstance(result, Response) else injected
        if target is not None:
            target.headers.update(outcome.headers)
        else:
            logger.debug("[AUTHZ] No response object to carry rate limit headers")
    return result


def _rejection_response(exc: AuthorizationRejected) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.payload.to_content(),
        headers=exc.headers or None,
    )


def _guard(
    func: Callable[..., Any],
    run: Callable[[PermissionEnforcer, Request, str, Callable[[], Awaitable[Any]]], Awaitable[Any]],
) -> Callable[..., Any]:
    signature = inspect.signature(func)
    if not any(
        param.annotation is Request or param.annotation == "Request"
        for param in signature.parameters.values()
    ):
        raise TypeError(f"{func.__name__} must accept a `request: Request` parameter")

    is_async = inspect.iscoroutinefunction(func)

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        request = _find_instance(args, kwargs, Request)
        subject_id = get_current_subject(request)

        async def call_endpoint() -> Any:
            if is_async:
                return await func(*args, **kwargs)
            return await run_in_threadpool(func, *args, **kwargs)

        try:
            outcome = await run(_enforcer_for(request), request, subject_id, call_endpoint)
        except AuthorizationRejected as exc:
            return _rejection_response(exc)
        return _apply_headers(outcome, _find_instance(args, kwargs, Response))

    # Preserve the original function signature for FastAPI dependency injection
    wrapper.__signature__ = signature  # type: ignore[attr-defined]
    return wrapper


def require_permission(
    resource: str,
    action: str,
    context_extractor: Optional[ContextExtractor] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Guard an endpoint with check_permission(subject, resource, action).

    Args:
        resource: Protected resource type
        action: Protected action
        context_extractor: Builds the RequestContext (target owner, teams,
            attributes) from the request; defaults to a collection-level action
            on the caller's own records (target owner = caller)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        async def run(
            enforcer: PermissionEnforcer,
            request: Request,
            subject_id: str,
            call_endpoint: Callable[[], Awaitable[Any]],
        ) -> EnforcementResult[Any]:
            context = RequestContext(subject_id=subject_id, target_owner_id=subject_id)
            if context_extractor is not None:
                extracted = context_extractor(request, subject_id)
                context = await extracted if inspect.isawaitable(extracted) else extracted
            return await enforcer.enforce(subject_id, resource, action, context, call_endpoint)

        return _guard(func, run)

    return decorator


def rate_limited(
    action: str, max_actions: int, window_minutes: int
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Apply a standalone fixed-window quota to an endpoint.

    The quota is validated when the decorator is applied, so a non-positive
    limit fails at import time instead of on the first request.
    """
    rule = RateLimitRule(max_actions=max_actions, window_minutes=window_minutes)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        async def run(
            enforcer: PermissionEnforcer,
            request: Request,
            subject_id: str,
            call_endpoint: Callable[[], Awaitable[Any]],
        ) -> EnforcementResult[Any]:
            return await enforcer.enforce_rate_limit(subject_id, action, rule, call_endpoint)

        return _guard(func, run)

    return decorator
