from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from scopegate.core.exceptions import RepositoryException
from scopegate.models.permission_grant import ResourcePermission
from scopegate.repositories.permission_grant_repository import PermissionGrantRepository


def _grant_values(**overrides):
    values = dict(
        scope="OWN",
        rate_limit_max_actions=10,
        rate_limit_window_minutes=60,
        time_restriction=None,
        filters=None,
        granted_by="admin-1",
        expires_at=None,
    )
    values.update(overrides)
    return values


def test_upsert_inserts_new_grant(db):
    repo = PermissionGrantRepository(db)

    row = repo.upsert("user-123", "ticket", "create", **_grant_values())

    assert len(row.id) == 26
    assert repo.get_by_key("user-123", "ticket", "create").id == row.id
    assert [r.id for r in repo.list_for_subject("user-123")] == [row.id]


def test_upsert_replaces_whole_condition(db):
    repo = PermissionGrantRepository(db)
    first = repo.upsert(
        "user-123", "ticket", "create", **_grant_values(filters={"department": "sales"})
    )

    second = repo.upsert(
        "user-123",
        "ticket",
        "create",
        **_grant_values(
            scope="ALL",
            rate_limit_max_actions=None,
            rate_limit_window_minutes=None,
            granted_by="admin-2",
        ),
    )

    assert second.id == first.id
    assert [r.id for r in repo.list_for_subject("user-123")] == [first.id]
    stored = repo.get_by_key("user-123", "ticket", "create")
    assert stored.scope == "ALL"
    assert stored.rate_limit_max_actions is None
    assert stored.filters is None
    assert stored.granted_by == "admin-2"


def test_delete_by_key(db):
    repo = PermissionGrantRepository(db)
    repo.upsert("user-123", "ticket", "create", **_grant_values())

    assert repo.delete_by_key("user-123", "ticket", "create") is True
    assert repo.delete_by_key("user-123", "ticket", "create") is False
    assert repo.get_by_key("user-123", "ticket", "create") is None


def test_list_for_subject_and_resource(db):
    repo = PermissionGrantRepository(db)
    repo.upsert("u1", "report", "generate", **_grant_values())
    repo.upsert("u1", "report", "view", **_grant_values())
    repo.upsert("u2", "report", "view", **_grant_values())
    repo.upsert("u2", "ticket", "create", **_grant_values())

    assert {row.action for row in repo.list_for_subject("u1")} == {"generate", "view"}
    assert {row.subject_id for row in repo.list_for_resource("report")} == {"u1", "u2"}
    assert repo.list_for_subject("nobody") == []


def test_transaction_commits(db, session_factory):
    repo = PermissionGrantRepository(db)
    with repo.transaction():
        repo.upsert("u1", "report", "view", **_grant_values())

    other = session_factory()
    try:
        assert PermissionGrantRepository(other).get_by_key("u1", "report", "view") is not None
    finally:
        other.close()


def test_query_errors_are_wrapped():
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    repo = PermissionGrantRepository(session)

    with pytest.raises(RepositoryException):
        repo.get_by_key("u1", "ticket", "create")
    with pytest.raises(RepositoryException):
        repo.delete_by_key("u1", "ticket", "create")
    with pytest.raises(RepositoryException):
        repo.list_for_resource("ticket")


def test_model_repr():
    row = ResourcePermission(subject_id="u1", resource="ticket", action="create")
    assert repr(row) == "<ResourcePermission u1:ticket:create>"
