import asyncio

from fastapi import FastAPI, Request, Response
from fastapi.testclient import TestClient
import pytest

from scopegate.core.enums import DataScope
from scopegate.core.exceptions import InvalidConfigurationException
from scopegate.domain.authorization import PermissionCondition, RateLimitRule, RequestContext
from scopegate.errors import register_error_handlers
from scopegate.middleware.authz_decorators import rate_limited, require_permission

USER = {"X-Subject-Id": "user-123"}


def _ticket_context(request: Request, subject_id: str) -> RequestContext:
    return RequestContext(
        subject_id=subject_id, target_owner_id=request.query_params.get("owner_id")
    )


@pytest.fixture
def guarded_app(permission_service, enforcer):
    app = FastAPI()
    register_error_handlers(app)
    app.state.permission_service = permission_service
    app.state.permission_enforcer = enforcer

    @app.post("/tickets")
    @require_permission("ticket", "create")
    async def create_ticket(request: Request, response: Response):
        return {"created": True}

    @app.put("/tickets/{ticket_id}")
    @require_permission("ticket", "update", context_extractor=_ticket_context)
    async def update_ticket(ticket_id: str, request: Request):
        return {"updated": ticket_id}

    @app.post("/tickets/conflict")
    @require_permission("ticket", "create")
    async def conflicting_ticket(request: Request):
        return Response(status_code=409)

    @app.get("/exports")
    @rate_limited("export:generate", max_actions=1, window_minutes=5)
    def generate_export(request: Request):
        return Response(content="csv", media_type="text/csv")

    return app


@pytest.fixture
def guarded_client(guarded_app):
    return TestClient(guarded_app)


def _grant(service, action, condition):
    asyncio.run(service.grant_permission("user-123", "ticket", action, condition, "admin-1"))


def test_granted_request_carries_rate_limit_headers(guarded_client, permission_service):
    _grant(
        permission_service,
        "create",
        PermissionCondition(
            scope=DataScope.OWN, rate_limit=RateLimitRule(max_actions=2, window_minutes=60)
        ),
    )

    first = guarded_client.post("/tickets", headers=USER)
    second = guarded_client.post("/tickets", headers=USER)
    third = guarded_client.post("/tickets", headers=USER)

    assert first.status_code == 200
    assert first.json() == {"created": True}
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert second.headers["X-RateLimit-Remaining"] == "0"
    assert third.status_code == 429
    assert third.json()["error"] == "Rate limit exceeded"
    assert third.json()["retryAfter"] == 3600
    assert third.headers["Retry-After"] == "3600"


def test_missing_grant_is_forbidden(guarded_client):
    response = guarded_client.post("/tickets", headers=USER)

    assert response.status_code == 403
    assert response.json()["reason"] == "NO_GRANT"


def test_missing_subject_is_unauthorized(guarded_client):
    response = guarded_client.post("/tickets")

    assert response.status_code == 401


def test_context_extractor_drives_scope(guarded_client, permission_service):
    _grant(permission_service, "update", PermissionCondition(scope=DataScope.OWN))

    own = guarded_client.put("/tickets/t1", params={"owner_id": "user-123"}, headers=USER)
    other = guarded_client.put("/tickets/t1", params={"owner_id": "user-999"}, headers=USER)

    assert own.status_code == 200
    assert own.json() == {"updated": "t1"}
    assert other.status_code == 403
    assert other.json()["reason"] == "SCOPE_MISMATCH"


def test_error_response_does_not_consume(guarded_client, permission_service):
    _grant(
        permission_service,
        "create",
        PermissionCondition(rate_limit=RateLimitRule(max_actions=1, window_minutes=60)),
    )

    conflict = guarded_client.post("/tickets/conflict", headers=USER)
    created = guarded_client.post("/tickets", headers=USER)

    assert conflict.status_code == 409
    assert created.status_code == 200


def test_rate_limited_sync_endpoint(guarded_client):
    first = guarded_client.get("/exports", headers=USER)
    second = guarded_client.get("/exports", headers=USER)
    other_subject = guarded_client.get("/exports", headers={"X-Subject-Id": "user-456"})

    assert first.status_code == 200
    assert first.text == "csv"
    assert first.headers["X-RateLimit-Remaining"] == "0"
    assert second.status_code == 429
    assert other_subject.status_code == 200


def test_rate_limited_validates_quota_eagerly():
    with pytest.raises(InvalidConfigurationException):
        rate_limited("export:generate", max_actions=0, window_minutes=5)


def test_endpoint_without_request_is_rejected():
    with pytest.raises(TypeError):

        @require_permission("ticket", "create")
        async def no_request():
            return None


def test_fail_open_response_is_marked_degraded(guarded_client, permission_service, fake_redis):
    _grant(
        permission_service,
        "create",
        PermissionCondition(rate_limit=RateLimitRule(max_actions=2, window_minutes=60)),
    )
    fake_redis.fail_ops.add("get")

    response = guarded_client.post("/tickets", headers=USER)

    assert response.status_code == 200
    assert response.headers["X-Authz-Degraded"] == "check"
    assert "X-RateLimit-Remaining" not in response.headers
