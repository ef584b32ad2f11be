from datetime import datetime, timedelta, timezone
import logging
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from scopegate.core.enums import DataScope
from scopegate.core.exceptions import StoreUnavailableException, ValidationException
from scopegate.domain.authorization import PermissionCondition, RateLimitRule, TimeRestriction
from scopegate.services.grant_store import GrantInput, PermissionGrantStore

OWN_LIMITED = PermissionCondition(
    scope=DataScope.OWN, rate_limit=RateLimitRule(max_actions=10, window_minutes=60)
)


def _future():
    return datetime.now(timezone.utc) + timedelta(days=1)


def _past():
    return datetime.now(timezone.utc) - timedelta(minutes=1)


@pytest.mark.asyncio
async def test_grant_then_find_returns_domain_value(grant_store):
    created = await grant_store.grant("user-123", "ticket", "create", OWN_LIMITED, "admin-1")

    found = await grant_store.find_grant("user-123", "ticket", "create")

    assert found is not None
    assert found.id == created.id
    assert found.condition.scope == DataScope.OWN
    assert found.condition.rate_limit == RateLimitRule(max_actions=10, window_minutes=60)
    assert found.granted_by == "admin-1"


@pytest.mark.asyncio
async def test_find_missing_grant_returns_none(grant_store):
    assert await grant_store.find_grant("nobody", "ticket", "create") is None


@pytest.mark.asyncio
async def test_regrant_replaces_condition_without_merging(grant_store):
    await grant_store.grant(
        "u1",
        "ticket",
        "create",
        PermissionCondition(
            scope=DataScope.OWN,
            rate_limit=RateLimitRule(max_actions=10, window_minutes=60),
            time_restriction=TimeRestriction(start_time="09:00", end_time="17:00"),
            filters={"department": "sales"},
        ),
        "admin-1",
    )
    await grant_store.find_grant("u1", "ticket", "create")  # populate the cache

    await grant_store.grant("u1", "ticket", "create", PermissionCondition(scope=DataScope.ALL), "admin-2")

    found = await grant_store.find_grant("u1", "ticket", "create")
    assert found.condition == PermissionCondition(scope=DataScope.ALL)
    assert found.granted_by == "admin-2"


@pytest.mark.asyncio
async def test_expired_grants_are_invisible(grant_store):
    await grant_store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1", expires_at=_past())
    await grant_store.grant("u1", "ticket", "view", OWN_LIMITED, "admin-1", expires_at=_future())

    assert await grant_store.find_grant("u1", "ticket", "create") is None
    assert await grant_store.find_grant("u1", "ticket", "view") is not None
    assert [g.action for g in await grant_store.list_subject_grants("u1")] == ["view"]
    assert [g.action for g in await grant_store.list_grants_by_resource("ticket")] == ["view"]


@pytest.mark.asyncio
async def test_revoke_removes_grant_and_cache_entry(grant_store, grant_cache, fake_redis):
    await grant_store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    await grant_store.find_grant("u1", "ticket", "create")
    assert grant_cache.key_for("u1", "ticket", "create") in fake_redis.values

    assert await grant_store.revoke("u1", "ticket", "create") is True

    assert grant_cache.key_for("u1", "ticket", "create") not in fake_redis.values
    assert await grant_store.find_grant("u1", "ticket", "create") is None
    assert await grant_store.revoke("u1", "ticket", "create") is False


@pytest.mark.asyncio
async def test_revoke_is_refused_when_cache_cannot_be_invalidated(
    grant_store, grant_cache, fake_redis
):
    await grant_store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    await grant_store.find_grant("u1", "ticket", "create")
    fake_redis.fail_ops.add("eval")

    with pytest.raises(StoreUnavailableException) as exc_info:
        await grant_store.revoke("u1", "ticket", "create")

    assert exc_info.value.store == "grant cache"
    fake_redis.fail_ops.clear()
    # Nothing changed: cache and database still agree on the grant
    assert grant_cache.key_for("u1", "ticket", "create") in fake_redis.values
    assert [g.action for g in await grant_store.list_subject_grants("u1")] == ["create"]


@pytest.mark.asyncio
async def test_failed_invalidation_after_commit_is_raised_and_logged(
    grant_store, grant_cache, monkeypatch, caplog
):
    await grant_store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    original_invalidate = grant_cache.invalidate
    calls = []

    async def fail_second_invalidate(subject_id, resource, action):
        calls.append(action)
        if len(calls) == 2:
            raise StoreUnavailableException("grant cache", "invalidate")
        await original_invalidate(subject_id, resource, action)

    monkeypatch.setattr(grant_cache, "invalidate", fail_second_invalidate)

    with caplog.at_level(logging.ERROR):
        with pytest.raises(StoreUnavailableException):
            await grant_store.revoke("u1", "ticket", "create")

    assert "committed but the cache was not invalidated" in caplog.text
    assert await grant_store.list_subject_grants("u1") == []


@pytest.mark.asyncio
async def test_revoke_during_lookup_is_not_recached(
    grant_store, grant_cache, fake_redis, monkeypatch
):
    await grant_store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    original_set = grant_cache.set

    async def revoke_then_fill(grant, generation):
        await grant_store.revoke("u1", "ticket", "create")
        return await original_set(grant, generation)

    monkeypatch.setattr(grant_cache, "set", revoke_then_fill)
    # This lookup read the grant from the database just before the revoke
    assert await grant_store.find_grant("u1", "ticket", "create") is not None
    monkeypatch.setattr(grant_cache, "set", original_set)

    assert grant_cache.key_for("u1", "ticket", "create") not in fake_redis.values
    assert await grant_store.find_grant("u1", "ticket", "create") is None


@pytest.mark.asyncio
async def test_cached_grant_served_without_database(session_factory, grant_cache):
    store = PermissionGrantStore(session_factory=session_factory, cache=grant_cache, use_cache=True)
    await store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    await store.find_grant("u1", "ticket", "create")

    broken_factory = MagicMock(side_effect=AssertionError("database should not be queried"))
    cached_only = PermissionGrantStore(
        session_factory=broken_factory, cache=grant_cache, use_cache=True
    )

    found = await cached_only.find_grant("u1", "ticket", "create")
    assert found is not None
    broken_factory.assert_not_called()


@pytest.mark.asyncio
async def test_absent_grants_are_not_cached(grant_store, grant_cache, fake_redis):
    await grant_store.find_grant("u1", "ticket", "create")
    assert grant_cache.key_for("u1", "ticket", "create") not in fake_redis.values

    await grant_store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    assert await grant_store.find_grant("u1", "ticket", "create") is not None


@pytest.mark.asyncio
async def test_cache_failure_falls_back_to_database(grant_store, fake_redis):
    await grant_store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    fake_redis.fail_ops.update({"get", "eval"})

    found = await grant_store.find_grant("u1", "ticket", "create")

    assert found is not None
    assert found.subject_id == "u1"


@pytest.mark.asyncio
async def test_database_failure_is_store_unavailable(grant_cache):
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    store = PermissionGrantStore(session_factory=lambda: session, cache=grant_cache, use_cache=True)

    with pytest.raises(StoreUnavailableException) as exc_info:
        await store.find_grant("u1", "ticket", "create")

    assert exc_info.value.store == "grant store"
    session.close.assert_called_once()


@pytest.mark.asyncio
async def test_incomplete_key_rejected(grant_store):
    with pytest.raises(ValidationException):
        await grant_store.grant("u1", " ", "create", OWN_LIMITED, "admin-1")


@pytest.mark.asyncio
async def test_bulk_grant_counts_failures(grant_store):
    result = await grant_store.bulk_grant(
        [
            GrantInput("u1", "report", "view", OWN_LIMITED),
            GrantInput("", "report", "view", OWN_LIMITED),
            GrantInput("u2", "report", "view", PermissionCondition(scope=DataScope.TEAM)),
        ],
        granted_by="admin-1",
    )

    assert result.successful == 2
    assert result.failed == 1
    assert len(result.errors) == 1
    assert {g.subject_id for g in await grant_store.list_grants_by_resource("report")} == {
        "u1",
        "u2",
    }


@pytest.mark.asyncio
async def test_store_without_cache(session_factory):
    store = PermissionGrantStore(session_factory=session_factory, use_cache=False)
    assert store.cache is None

    await store.grant("u1", "ticket", "create", OWN_LIMITED, "admin-1")
    assert await store.find_grant("u1", "ticket", "create") is not None
